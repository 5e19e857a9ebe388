import logging

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from app.core.config import settings
from app.core.security import TokenValidationError, decode_token

logger = logging.getLogger(__name__)


def get_user_identifier(request: Request) -> str:
    """Rate-limit key: the authenticated user id when a valid bearer token is sent, else the client IP.

    Example:
        >>> get_user_identifier(request)
        'user:42'       # Authenticated
        '10.0.0.1'      # Anonymous (webhooks, health)
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        try:
            return f"user:{decode_token(auth_header[7:])['sub']}"
        except (TokenValidationError, KeyError):
            pass
    return get_remote_address(request)


def _create_redis_storage_uri() -> str:
    """Redis-backed counters in production so limits hold across API workers; memory elsewhere."""
    if settings.ENV.lower() != "prod" or not settings.REDIS_URL:
        logger.info("Rate limiter using in-memory storage (dev/test mode)")
        return "memory://"
    return settings.REDIS_URL


storage_uri = _create_redis_storage_uri()
limiter = Limiter(key_func=get_user_identifier, storage_uri=storage_uri)

RATE_LIMITS = {
    # Lifecycle mutations hit the payment processor
    "subscription_mutation": "10/minute",
    "subscription_read": "120/minute",
    # Webhooks
    "webhook_paypal": "300/minute",
}

