"""Read-only subscription endpoints."""
import datetime as dt

from fastapi import APIRouter, Request

from app.api.dependencies import CurrentUserDep, DbDep, PremiumGateDep
from app.api.rate_limit import RATE_LIMITS, limiter
from app.models.subscription_models import utcnow
from app.services.subscription import PaymentFailureLedger, SubscriptionStore, is_premium_subscription

from .schemas import PaymentFailureOut, PlanOut, PremiumOut, SubscriptionStatusOut

router = APIRouter()

_READ_LIMIT = RATE_LIMITS["subscription_read"]


def _iso(value: dt.datetime | None) -> str | None:
    return value.isoformat() if value else None


@router.get("/status", response_model=SubscriptionStatusOut)
@limiter.limit(_READ_LIMIT)
def get_status(request: Request, current_user_id: CurrentUserDep, db: DbDep):
    now = utcnow()
    subscription = SubscriptionStore(db).get(current_user_id)
    if subscription is None:
        return SubscriptionStatusOut(plan="free", status="none", is_premium=False)

    failure = PaymentFailureLedger(db).open_failure(current_user_id)
    return SubscriptionStatusOut(
        plan=subscription.plan_type.value,
        status=subscription.status.value,
        is_premium=is_premium_subscription(subscription, now, failure),
        auto_renewal=subscription.auto_renewal,
        started_at=_iso(subscription.started_at),
        expires_at=_iso(subscription.expires_at),
        next_plan=subscription.next_plan_type.value if subscription.next_plan_type else None,
        next_plan_starts_at=_iso(subscription.next_plan_starts_at),
        cancelled_at=_iso(subscription.cancelled_at),
        suspended_at=_iso(subscription.suspended_at),
        payment_failure=PaymentFailureOut(
            detected_at=failure.detected_at.isoformat(),
            grace_period_ends_at=failure.grace_period_ends_at.isoformat(),
            days_remaining=failure.days_remaining(now),
            retry_count=failure.retry_count,
            last_retry_at=_iso(failure.last_retry_at),
        )
        if failure is not None
        else None,
    )


@router.get("/premium", response_model=PremiumOut)
@limiter.limit(_READ_LIMIT)
def get_premium(request: Request, current_user_id: CurrentUserDep, gate: PremiumGateDep):
    return PremiumOut(is_premium=gate.is_premium(current_user_id))


@router.get("/plans", response_model=list[PlanOut])
@limiter.limit(_READ_LIMIT)
def list_plans(request: Request, db: DbDep):
    return [
        PlanOut(
            plan_type=plan.plan_type.value,
            name=plan.name,
            price_usd=float(plan.price_usd),
            billing_interval=plan.plan_type.interval_unit,
        )
        for plan in SubscriptionStore(db).list_plans()
    ]
