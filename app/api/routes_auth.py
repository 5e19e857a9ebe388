"""Bearer-token authentication for subscriber endpoints.

Identity is owned by the main application; this service only verifies the
access token it issued and reads the user id from it.
"""
from fastapi import Header, HTTPException

from app.core.audit import log_failure
from app.core.security import TokenExpiredError, TokenValidationError, decode_token


def get_current_user_id(authorization: str = Header(None)) -> int:
    if not authorization or not authorization.lower().startswith("bearer "):
        log_failure("auth.token.parse", user_id=None, error="missing_token")
        raise HTTPException(status_code=401, detail="Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = decode_token(token)
        return int(payload["sub"])  # type: ignore
    except TokenExpiredError as exc:
        log_failure("auth.token.expired", user_id=None, error="expired")
        raise HTTPException(status_code=401, detail="Token expired") from exc
    except (TokenValidationError, ValueError) as exc:
        log_failure("auth.token.invalid", user_id=None, error="invalid")
        raise HTTPException(status_code=401, detail="Invalid token") from exc
