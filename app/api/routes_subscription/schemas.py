"""Request and response schemas for subscription endpoints.

Responses never expose processor credentials, payer ids or raw webhook
payloads.
"""
from __future__ import annotations

from pydantic import BaseModel, Field

from app.models.subscription_models import PlanType


# ── Requests ──────────────────────────────────────────────────────────

class SubscribeIn(BaseModel):
    plan_type: PlanType
    discount_code: str | None = Field(default=None, max_length=50)
    return_url: str | None = Field(default=None, max_length=500)


class ConfirmIn(BaseModel):
    remote_subscription_id: str = Field(min_length=1, max_length=64)


class PlanChangeIn(BaseModel):
    plan_type: PlanType


class ReasonIn(BaseModel):
    reason: str | None = Field(default=None, max_length=127)


# ── Transition result ─────────────────────────────────────────────────

class TransitionOut(BaseModel):
    success: bool
    new_status: str | None = None
    user_message: str
    retryable: bool = False
    approval_url: str | None = None
    resubscription_required: bool = False
    code: str | None = None


# ── Reads ─────────────────────────────────────────────────────────────

class PaymentFailureOut(BaseModel):
    detected_at: str
    grace_period_ends_at: str
    days_remaining: int
    retry_count: int
    last_retry_at: str | None = None


class SubscriptionStatusOut(BaseModel):
    plan: str
    status: str
    is_premium: bool
    auto_renewal: bool = False
    started_at: str | None = None
    expires_at: str | None = None
    next_plan: str | None = None
    next_plan_starts_at: str | None = None
    cancelled_at: str | None = None
    suspended_at: str | None = None
    payment_failure: PaymentFailureOut | None = None


class PremiumOut(BaseModel):
    is_premium: bool


class PlanOut(BaseModel):
    plan_type: str
    name: str
    price_usd: float
    billing_interval: str | None = None
