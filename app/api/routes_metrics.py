import hmac

from fastapi import APIRouter, Header, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.core.config import settings

router = APIRouter()


def _authorized(authorization: str | None) -> bool:
    if not settings.METRICS_TOKEN:
        return True
    if not authorization or not authorization.lower().startswith("bearer "):
        return False
    return hmac.compare_digest(authorization.split(" ", 1)[1], settings.METRICS_TOKEN)


@router.get("/metrics")
def metrics_endpoint(authorization: str | None = Header(None)) -> Response:
    """Prometheus scrape target; guarded by ``METRICS_TOKEN`` when one is configured."""
    if not _authorized(authorization):
        raise HTTPException(status_code=401, detail="Invalid metrics token")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
