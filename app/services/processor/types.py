"""Value types exchanged with the payment processor."""
from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Protocol

from app.models.subscription_models import PlanType


@dataclass(frozen=True)
class Credential:
    """Bearer token plus the monotonic instant after which it must be refreshed."""
    access_token: str
    refresh_after: float

    def is_fresh(self, now: float) -> bool:
        return now < self.refresh_after

    def __repr__(self) -> str:
        return f"Credential(refresh_after={self.refresh_after:.0f}, access_token=<redacted>)"


@dataclass(frozen=True)
class PlanSpec:
    """What to bill: the plan cadence and its price, optionally discounted for the first cycle."""
    plan_type: PlanType
    price_usd: Decimal
    display_name: str
    first_cycle_price_usd: Decimal | None = None

    @property
    def interval_unit(self) -> str:
        unit = self.plan_type.interval_unit
        if unit is None:
            raise ValueError("free plan has no billing interval")
        return unit


@dataclass(frozen=True)
class CreatedSubscription:
    remote_id: str
    approval_url: str | None
    processor_plan_id: str | None = None


@dataclass(frozen=True)
class RevisedSubscription:
    approval_url: str | None
    processor_plan_id: str | None = None


class OperationResult(str, enum.Enum):
    OK = "ok"
    ALREADY_IN_TARGET_STATE = "already_in_terminal_state"


@dataclass(frozen=True)
class RemoteStatus:
    remote_id: str
    status: str
    plan_id: str | None = None
    payer_id: str | None = None
    payer_email: str | None = None
    last_payment_at: dt.datetime | None = None
    next_billing_at: dt.datetime | None = None
    failed_payments_count: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == "ACTIVE"

    @property
    def is_healthy(self) -> bool:
        """Active with no outstanding failed payments."""
        return self.is_active and self.failed_payments_count == 0

    @property
    def is_terminal(self) -> bool:
        return self.status in {"CANCELLED", "EXPIRED"}


class ProcessorClient(Protocol):
    """Operations the lifecycle layer needs from a recurring-payment processor."""

    def authenticate(self, force: bool = False) -> Credential: ...

    def create_subscription(
        self,
        plan: PlanSpec,
        *,
        user_id: int,
        return_url: str,
        cancel_url: str,
        request_id: str,
    ) -> CreatedSubscription: ...

    def activate(self, remote_id: str, reason: str) -> OperationResult: ...

    def suspend(self, remote_id: str, reason: str) -> OperationResult: ...

    def cancel(self, remote_id: str, reason: str) -> OperationResult: ...

    def revise(self, remote_id: str, plan: PlanSpec, *, return_url: str, cancel_url: str) -> RevisedSubscription: ...

    def fetch_status(self, remote_id: str) -> RemoteStatus: ...

    def verify_webhook_signature(self, headers: Mapping[str, str], event: Mapping[str, Any]) -> bool: ...
