import logging
import uuid
from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.exceptions import BillingException

logger = logging.getLogger("app.errors")


def register_error_handlers(app):
    @app.exception_handler(BillingException)
    async def billing_exception(request: Request, exc: BillingException):
        logger.info("Billing error code=%s path=%s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "new_status": None,
                "user_message": exc.message,
                "retryable": exc.retryable,
                "code": exc.code,
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception(request: Request, exc: Exception):  # noqa: BLE001
        correlation_id = getattr(request.state, "request_id", None) or uuid.uuid4().hex
        logger.exception("Unhandled error cid=%s path=%s method=%s", correlation_id, request.url.path, request.method)
        return JSONResponse(status_code=500, content={"detail": "Internal server error", "cid": correlation_id})

    return app
