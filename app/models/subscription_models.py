"""Subscription lifecycle models.

One ``Subscription`` row per user tracks the billed plan, its status and the
link to the processor's remote subscription. ``PaymentFailure`` rows form an
append-only ledger of failed charges, with at most one unresolved row per
user. ``SubscriptionEvent`` is the audit history of applied transitions.
"""
from __future__ import annotations

import datetime as dt
import enum
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base_class import Base
from app.db.types import UTCDateTime


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class PlanType(str, enum.Enum):
    """Billed plan. FREE has no remote subscription."""
    FREE = "free"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def interval_unit(self) -> str | None:
        """Processor billing interval for the plan (None for FREE)."""
        return {PlanType.MONTHLY: "MONTH", PlanType.YEARLY: "YEAR"}.get(self)

    @property
    def is_paid(self) -> bool:
        return self is not PlanType.FREE


class SubscriptionStatus(str, enum.Enum):
    NONE = "none"                       # Never subscribed
    PENDING = "pending"                 # Remote subscription created, awaiting approval
    ACTIVE = "active"                   # Paid and renewing
    PAYMENT_FAILED = "payment_failed"   # Charge failed, inside grace period
    SUSPENDED = "suspended"             # Paused, access revoked
    CANCELLED = "cancelled"             # No renewal, access until expires_at
    EXPIRED = "expired"                 # Terminal until resubscribe/reactivate


class SubscriptionPlan(Base):
    """Plan catalog: what can be bought and for how much."""
    __tablename__ = "subscription_plans"

    id: Mapped[int] = mapped_column(primary_key=True)
    plan_type: Mapped[PlanType] = mapped_column(
        Enum(PlanType, native_enum=False, length=20), unique=True, nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    price_usd: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    """Inactive plans stay in the catalog for existing subscribers but cannot be bought."""
    features: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(plan_type={self.plan_type.value}, price_usd={self.price_usd}, active={self.is_active})>"


class Subscription(Base):
    """
    The single subscription row of a user.

    Every write goes through SubscriptionStore.compare_and_swap, which bumps
    ``version``; LifecycleOrchestrator is the only caller.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_subscriptions_user_id"),
        CheckConstraint(
            "(next_plan_type IS NULL AND next_plan_starts_at IS NULL) OR "
            "(next_plan_type IS NOT NULL AND next_plan_starts_at IS NOT NULL)",
            name="next_plan_pair",
        ),
        Index("ix_subscriptions_status_expires_at", "status", "expires_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)

    plan_type: Mapped[PlanType] = mapped_column(
        Enum(PlanType, native_enum=False, length=20), default=PlanType.FREE, nullable=False
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, native_enum=False, length=20),
        default=SubscriptionStatus.NONE,
        nullable=False,
    )
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    """Optimistic-concurrency counter, incremented by every applied transition"""

    remote_subscription_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    """Processor subscription id (e.g. I-XXXXXXXX); replaced, never reused, on plan switch"""

    started_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime(), nullable=True)
    expires_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime(), nullable=True, index=True)
    """End of the paid period: access ends / next charge happens here"""

    auto_renewal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    next_plan_type: Mapped[Optional[PlanType]] = mapped_column(
        Enum(PlanType, native_enum=False, length=20), nullable=True
    )
    next_plan_starts_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime(), nullable=True, index=True)
    scheduled_change_created_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime(), nullable=True)

    suspended_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime(), nullable=True)

    payer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    discount_code_id: Mapped[Optional[int]] = mapped_column(ForeignKey("discount_codes.id"), nullable=True)
    """Code applied at subscribe time; redeemed once activation succeeds"""
    bonus_months_applied: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<Subscription(user_id={self.user_id}, plan={self.plan_type.value}, "
            f"status={self.status.value}, version={self.version})>"
        )

    @property
    def has_scheduled_change(self) -> bool:
        return self.next_plan_type is not None


class PaymentFailure(Base):
    """
    Append-only record of a failed charge reported by the processor.

    ``open_marker`` is 1 while unresolved and NULL afterwards; with the unique
    constraint on (user_id, open_marker) the database itself refuses a second
    unresolved row for the same user.
    """
    __tablename__ = "subscription_payment_failures"
    __table_args__ = (
        UniqueConstraint("user_id", "open_marker", name="uq_payment_failures_user_open"),
        Index("ix_payment_failures_open_deadline", "open_marker", "grace_period_ends_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    remote_subscription_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    detected_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)
    grace_period_ends_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_retry_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime(), nullable=True)

    resolved_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime(), nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    """'recovered' or 'grace_expired'"""
    open_marker: Mapped[Optional[int]] = mapped_column(Integer, default=1, nullable=True)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def days_remaining(self, now: dt.datetime) -> int:
        """Whole days left in the grace window (rounded up, never negative)."""
        seconds = (self.grace_period_ends_at - now).total_seconds()
        if seconds <= 0:
            return 0
        return int(-(-seconds // 86400))


class SubscriptionEvent(Base):
    """Audit history: one row per applied transition, written with the CAS commit."""
    __tablename__ = "subscription_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    from_status: Mapped[str] = mapped_column(String(20), nullable=False)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    plan_before: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    plan_after: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    """Row version after the transition"""
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


# Register referenced tables (discount_codes) on the shared metadata
from app.models import discount_models  # noqa: E402,F401
