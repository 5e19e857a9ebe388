"""Lifecycle policy: billing-period arithmetic and plan-change rules."""
from __future__ import annotations

import calendar
import datetime as dt

from app.core.config import settings
from app.models.subscription_models import PlanType, SubscriptionStatus

SUBSCRIBABLE_FROM = frozenset({SubscriptionStatus.NONE, SubscriptionStatus.PENDING, SubscriptionStatus.EXPIRED})
CANCELLABLE_FROM = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.SUSPENDED, SubscriptionStatus.PAYMENT_FAILED}
)
REACTIVATABLE_FROM = frozenset(
    {SubscriptionStatus.SUSPENDED, SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED}
)
ALREADY_STOPPED = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})


def add_months(value: dt.datetime, months: int) -> dt.datetime:
    """Calendar month arithmetic; the day is clamped to the target month's length (Jan 31 + 1 = Feb 28/29)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_end(start: dt.datetime, plan: PlanType, bonus_months: int = 0) -> dt.datetime:
    """End of one billing period of ``plan`` starting at ``start``, plus any free months."""
    if plan is PlanType.MONTHLY:
        months = 1
    elif plan is PlanType.YEARLY:
        months = 12
    else:
        raise ValueError(f"{plan.value} plan has no billing period")
    return add_months(start, months + bonus_months)


def is_forbidden_downgrade(current: PlanType, requested: PlanType) -> bool:
    """Yearly to monthly must go through cancel + resubscribe."""
    return current is PlanType.YEARLY and requested is PlanType.MONTHLY


def hours_until(expires_at: dt.datetime, now: dt.datetime) -> float:
    return (expires_at - now).total_seconds() / 3600


def within_renewal_guard(expires_at: dt.datetime | None, now: dt.datetime, guard_hours: int | None = None) -> bool:
    """True when an immediate plan change would race the upcoming renewal charge."""
    if expires_at is None:
        return True
    guard = settings.PLAN_CHANGE_GUARD_HOURS if guard_hours is None else guard_hours
    return expires_at - now < dt.timedelta(hours=guard)


def grace_deadline(detected_at: dt.datetime, days: int | None = None) -> dt.datetime:
    return detected_at + dt.timedelta(days=settings.GRACE_PERIOD_DAYS if days is None else days)
