"""PaymentFailureLedger: append-only log of processor-reported failed charges."""
from __future__ import annotations

import datetime as dt
import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError
from app.models.subscription_models import PaymentFailure

logger = logging.getLogger(__name__)

RESOLUTION_RECOVERED = "recovered"
RESOLUTION_GRACE_EXPIRED = "grace_expired"
RESOLUTION_CANCELLED = "cancelled"


class PaymentFailureLedger:
    def __init__(self, db: Session) -> None:
        self.db = db

    def open_failure(self, user_id: int) -> PaymentFailure | None:
        stmt = (
            select(PaymentFailure)
            .where(PaymentFailure.user_id == user_id, PaymentFailure.resolved_at.is_(None))
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def history(self, user_id: int) -> list[PaymentFailure]:
        stmt = select(PaymentFailure).where(PaymentFailure.user_id == user_id).order_by(PaymentFailure.id)
        return list(self.db.execute(stmt).scalars())

    def expired_grace_periods(self, now: dt.datetime, limit: int = 200) -> list[PaymentFailure]:
        stmt = (
            select(PaymentFailure)
            .where(PaymentFailure.resolved_at.is_(None), PaymentFailure.grace_period_ends_at <= now)
            .order_by(PaymentFailure.grace_period_ends_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars())

    def record(
        self,
        *,
        user_id: int,
        remote_subscription_id: str | None,
        detected_at: dt.datetime,
        grace_period_ends_at: dt.datetime,
    ) -> PaymentFailure:
        """Open a failure row. The caller has already checked no unresolved row exists."""
        failure = PaymentFailure(
            user_id=user_id,
            remote_subscription_id=remote_subscription_id,
            detected_at=detected_at,
            grace_period_ends_at=grace_period_ends_at,
            retry_count=0,
            open_marker=1,
        )
        self.db.add(failure)
        self.db.flush()
        logger.info(
            "Payment failure opened for user %s (grace until %s)",
            user_id, grace_period_ends_at.isoformat(),
        )
        return failure

    def mark_retry(self, failure_id: int, now: dt.datetime) -> None:
        stmt = (
            update(PaymentFailure)
            .where(PaymentFailure.id == failure_id, PaymentFailure.resolved_at.is_(None))
            .values(retry_count=PaymentFailure.retry_count + 1, last_retry_at=now)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount != 1:
            raise ConflictError(user_id=self._owner(failure_id))

    def resolve(self, failure_id: int, now: dt.datetime, resolution: str) -> None:
        stmt = (
            update(PaymentFailure)
            .where(PaymentFailure.id == failure_id, PaymentFailure.resolved_at.is_(None))
            .values(resolved_at=now, resolution=resolution, open_marker=None)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount != 1:
            raise ConflictError(user_id=self._owner(failure_id))
        logger.info("Payment failure %s resolved (%s)", failure_id, resolution)

    def _owner(self, failure_id: int) -> int:
        owner = self.db.execute(select(PaymentFailure.user_id).where(PaymentFailure.id == failure_id)).scalar()
        return owner if owner is not None else -1
