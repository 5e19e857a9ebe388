"""SubscriptionStore: data access for subscription rows and the plan catalog.

Writes are compare-and-swap updates guarded by the row's ``version`` and
``status``; a miss raises ConflictError and leaves the row untouched.
"""
from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError
from app.models.subscription_models import (
    PlanType,
    Subscription,
    SubscriptionEvent,
    SubscriptionPlan,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_PLANS: tuple[tuple[PlanType, str, Decimal], ...] = (
    (PlanType.MONTHLY, "GatoFit Premium Monthly", Decimal("4.99")),
    (PlanType.YEARLY, "GatoFit Premium Yearly", Decimal("39.99")),
)

_IMMUTABLE_COLUMNS = frozenset({"id", "user_id", "version", "created_at"})


class SubscriptionStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    # --- reads ---------------------------------------------------------

    def get(self, user_id: int) -> Subscription | None:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_remote_id(self, remote_subscription_id: str) -> Subscription | None:
        stmt = select(Subscription).where(Subscription.remote_subscription_id == remote_subscription_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_or_create(self, user_id: int, now: dt.datetime) -> Subscription:
        """Return the user's row, inserting a ``none`` row on first contact."""
        existing = self.get(user_id)
        if existing is not None:
            return existing
        row = Subscription(
            user_id=user_id,
            plan_type=PlanType.FREE,
            status=SubscriptionStatus.NONE,
            version=0,
            auto_renewal=False,
            created_at=now,
            updated_at=now,
        )
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost the insert race; the other writer's row is the row
            self.db.rollback()
            existing = self.get(user_id)
            if existing is None:
                raise
            return existing
        return row

    def due_scheduled_changes(self, now: dt.datetime, limit: int = 200) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.next_plan_type.is_not(None),
                Subscription.next_plan_starts_at <= now,
            )
            .order_by(Subscription.next_plan_starts_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars())

    def lapsed_cancellations(self, now: dt.datetime, limit: int = 200) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.CANCELLED,
                Subscription.expires_at <= now,
            )
            .order_by(Subscription.expires_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars())

    def events(self, user_id: int) -> list[SubscriptionEvent]:
        stmt = (
            select(SubscriptionEvent)
            .where(SubscriptionEvent.user_id == user_id)
            .order_by(SubscriptionEvent.id)
        )
        return list(self.db.execute(stmt).scalars())

    # --- plan catalog --------------------------------------------------

    def get_plan(self, plan_type: PlanType) -> SubscriptionPlan | None:
        return self.db.execute(
            select(SubscriptionPlan).where(SubscriptionPlan.plan_type == plan_type)
        ).scalar_one_or_none()

    def list_plans(self, active_only: bool = True) -> list[SubscriptionPlan]:
        stmt = select(SubscriptionPlan).order_by(SubscriptionPlan.price_usd)
        if active_only:
            stmt = stmt.where(SubscriptionPlan.is_active.is_(True))
        return list(self.db.execute(stmt).scalars())

    def ensure_default_plans(self) -> None:
        for plan_type, name, price in DEFAULT_PLANS:
            if self.get_plan(plan_type) is None:
                self.db.add(SubscriptionPlan(plan_type=plan_type, name=name, price_usd=price, is_active=True))
        self.db.flush()

    # --- writes --------------------------------------------------------

    def compare_and_swap(
        self,
        user_id: int,
        *,
        expected_version: int,
        expected_status: SubscriptionStatus,
        now: dt.datetime,
        **changes: Any,
    ) -> int:
        """Apply ``changes`` only if the row still has the expected version and status.

        Returns the new version. Raises ConflictError when another writer got there first.
        """
        illegal = _IMMUTABLE_COLUMNS.intersection(changes)
        if illegal:
            raise ValueError(f"cannot change {', '.join(sorted(illegal))} through compare_and_swap")
        if ("next_plan_type" in changes) != ("next_plan_starts_at" in changes):
            raise ValueError("next_plan_type and next_plan_starts_at must change together")
        if "next_plan_type" in changes and (changes["next_plan_type"] is None) != (changes["next_plan_starts_at"] is None):
            raise ValueError("next_plan_type and next_plan_starts_at must both be set or both be cleared")

        new_version = expected_version + 1
        stmt = (
            update(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.version == expected_version,
                Subscription.status == expected_status,
            )
            .values(**changes, version=new_version, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            logger.info(
                "CAS miss for user %s (expected version=%s status=%s)",
                user_id, expected_version, expected_status.value,
            )
            raise ConflictError(user_id, expected_version, expected_status.value)
        return new_version

    def record_event(
        self,
        *,
        user_id: int,
        action: str,
        from_status: SubscriptionStatus,
        to_status: SubscriptionStatus,
        plan_before: PlanType | None,
        plan_after: PlanType | None,
        version: int,
        now: dt.datetime,
        detail: str | None = None,
    ) -> SubscriptionEvent:
        event = SubscriptionEvent(
            user_id=user_id,
            action=action,
            from_status=from_status.value,
            to_status=to_status.value,
            plan_before=plan_before.value if plan_before else None,
            plan_after=plan_after.value if plan_after else None,
            version=version,
            detail=detail,
            created_at=now,
        )
        self.db.add(event)
        return event
