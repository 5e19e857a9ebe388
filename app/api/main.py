import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware
from starlette.types import ASGIApp

from app import metrics
from app.api.rate_limit import limiter
from app.api.routes_health import router as health_router
from app.api.routes_metrics import router as metrics_router
from app.api.routes_subscription import router as subscription_router
from app.api.routes_webhooks import router as webhook_router
from app.core.config import settings
from app.core.errors import register_error_handlers
from app.core.logger import init_logging
from app.core.monitoring import init_monitoring

logger = logging.getLogger(__name__)

# PayPal webhook bodies are a few KB; subscriber requests are tiny
MAX_BODY_BYTES = 256 * 1024


async def _rate_limit_handler(request, exc: RateLimitExceeded):
    metrics.rate_limited(request.url.path)
    return JSONResponse(
        status_code=429,
        content={"success": False, "code": "RATE_LIMITED", "message": "Too many requests", "retryable": True},
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, hsts: bool) -> None:
        super().__init__(app)
        self.hsts = hsts

    async def dispatch(self, request, call_next):  # type: ignore[override]
        response = await call_next(request)
        if self.hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", f"max-age={settings.HSTS_SECONDS}; includeSubDomains"
            )
        response.headers.setdefault("Referrer-Policy", "same-origin")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Cache-Control", "no-store")
        return response


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Rejects oversized bodies and tags every response with a request id."""

    def __init__(self, app: ASGIApp, max_body: int = MAX_BODY_BYTES) -> None:
        super().__init__(app)
        self.max_body = max_body

    async def dispatch(self, request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        length_header = request.headers.get("content-length")
        if length_header and length_header.isdigit() and int(length_header) > self.max_body:
            logger.warning("Rejected %s %s: body of %s bytes", request.method, request.url.path, length_header)
            return JSONResponse(
                status_code=413, content={"detail": "Request body too large"}, headers={"X-Request-ID": request_id}
            )
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def _shutdown() -> None:
    from app.db.redis_client import close_redis_pool
    from app.services.processor import get_processor_client

    if get_processor_client.cache_info().currsize:
        get_processor_client().close()
        get_processor_client.cache_clear()
    try:
        close_redis_pool()
    except Exception:  # noqa: BLE001
        logger.debug("Redis pool close failed", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    _shutdown()


def create_app() -> FastAPI:
    init_logging()
    init_monitoring()

    is_production = settings.ENV.lower() == "prod"
    app = FastAPI(
        title=settings.APP_NAME,
        debug=False,
        docs_url=None if is_production else "/docs",
        redoc_url=None if is_production else "/redoc",
        openapi_url=None if is_production else "/openapi.json",
        lifespan=lifespan,
    )
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=settings.CORS_ALLOW_METHODS,
        allow_headers=settings.CORS_ALLOW_HEADERS,
    )
    if is_production:
        app.add_middleware(HTTPSRedirectMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, hsts=is_production)
    app.add_middleware(RequestContextMiddleware)
    register_error_handlers(app)

    app.include_router(subscription_router, prefix="/subscriptions", tags=["subscriptions"])
    app.include_router(webhook_router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(health_router)
    return app


app = create_app()
