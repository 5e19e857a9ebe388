"""Liveness and readiness probes."""
from __future__ import annotations

import logging
import time
from typing import Annotated

import redis
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import get_db
from app.models.subscription_models import SubscriptionPlan

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


def _check_db(db: Session) -> bool:
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Database check failed: %s", exc)
        return False
    return True


def _check_plans(db: Session) -> bool:
    """Both paid plans must be seeded before subscribe can succeed."""
    try:
        count = db.execute(
            select(func.count()).select_from(SubscriptionPlan).where(SubscriptionPlan.is_active.is_(True))
        ).scalar_one()
    except SQLAlchemyError:
        return False
    return count >= 2


def _check_redis() -> bool:
    try:
        from app.db.redis_client import get_redis_client

        return bool(get_redis_client().ping())
    except (redis.RedisError, RuntimeError):
        return False


def _processor_configured() -> bool:
    return bool(settings.PAYPAL_CLIENT_ID and settings.PAYPAL_CLIENT_SECRET and settings.PAYPAL_PRODUCT_ID)


@router.get("/live")
def live() -> dict[str, str]:
    """Process is up; touches no dependency."""
    return {"status": "alive"}


@router.get("/healthz")
def healthz(db: Annotated[Session, Depends(get_db)]) -> dict[str, str]:
    if not _check_db(db):
        raise HTTPException(status_code=503, detail="Database connectivity check failed")
    return {"status": "ok"}


@router.get("/ready")
def ready(db: Annotated[Session, Depends(get_db)]) -> dict[str, object]:
    """Database, plan catalogue and processor credentials are required; Redis only backs the premium cache."""
    start = time.monotonic()
    checks: dict[str, bool] = {
        "db": _check_db(db),
        "plans": False,
        "processor": _processor_configured(),
        "redis": _check_redis(),
    }
    if checks["db"]:
        checks["plans"] = _check_plans(db)
    latency_ms = int((time.monotonic() - start) * 1000)
    body: dict[str, object] = {**checks, "latency_ms": latency_ms}
    if not (checks["db"] and checks["plans"] and checks["processor"]):
        raise HTTPException(status_code=503, detail=body)
    return {"status": "ready", **body}
