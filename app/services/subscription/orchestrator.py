"""LifecycleOrchestrator: the subscription state machine.

Every transition follows the same saga:

1. read a snapshot of the user's row in a short session and validate the
   requested transition against it (fail fast, no processor call);
2. call the payment processor with no database session open;
3. commit in a fresh transaction with a compare-and-swap on the snapshot's
   ``(version, status)``, writing ledger rows and the audit event alongside;
4. after the commit: drop the premium cache entry, notify, record metrics.

The processor is always called before the local commit. If the commit loses
the race the processor call is not undone; the caller sees ConflictError and
retries against fresh state, and every processor call used here is either
idempotent or keyed by a deterministic request id.

Operations never raise BillingException: they return a TransitionResult.
"""
from __future__ import annotations

import datetime as dt
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Generator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app import metrics
from app.core.audit import log_audit_event
from app.core.config import settings
from app.core.exceptions import (
    BillingException,
    ConflictError,
    DowngradeNotAllowedError,
    InvalidTransitionError,
    PaymentNotConfirmedError,
    PlanNotAvailableError,
    ProcessorError,
    ProcessorFatalError,
    RemoteResourceGoneError,
    RenewalTooCloseError,
    ScheduledChangeExistsError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
)
from app.db.session import SessionLocal, session_scope
from app.models.subscription_models import (
    PaymentFailure,
    PlanType,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    utcnow,
)
from app.services.notification.service import NotificationKind, Notifier, SubscriptionNotifier
from app.services.processor import OperationResult, ProcessorClient, get_processor_client

from . import policy
from .discounts import DiscountService
from .ledger import (
    RESOLUTION_CANCELLED,
    RESOLUTION_GRACE_EXPIRED,
    RESOLUTION_RECOVERED,
    PaymentFailureLedger,
)
from .premium_gate import invalidate_premium_cache
from .store import SubscriptionStore

logger = logging.getLogger(__name__)

Clock = Callable[[], dt.datetime]

_CLEAR_SCHEDULE: dict[str, Any] = {
    "next_plan_type": None,
    "next_plan_starts_at": None,
    "scheduled_change_created_at": None,
}


@dataclass
class TransitionResult:
    success: bool
    new_status: SubscriptionStatus | None
    user_message: str
    retryable: bool = False
    applied: bool = False
    """True only when this call changed the row (no-op successes are False)"""
    approval_url: str | None = None
    resubscription_required: bool = False
    error: BillingException | None = None

    @property
    def code(self) -> str | None:
        return self.error.code if self.error is not None else None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "new_status": self.new_status.value if self.new_status else None,
            "user_message": self.user_message,
            "retryable": self.retryable,
        }
        if self.approval_url:
            data["approval_url"] = self.approval_url
        if self.resubscription_required:
            data["resubscription_required"] = True
        if self.error is not None:
            data["code"] = self.error.code
        return data


def _fmt_date(value: dt.datetime | None) -> str:
    return value.strftime("%B %d, %Y") if value else "the end of your billing period"


def _as_plan(value: PlanType | str) -> PlanType:
    if isinstance(value, PlanType):
        return value
    try:
        return PlanType(str(value).strip().lower())
    except ValueError:
        raise PlanNotAvailableError(str(value)) from None


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


class LifecycleOrchestrator:
    """The only writer of subscription rows and payment-failure rows."""

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        processor: ProcessorClient | None = None,
        notifier: Notifier | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._processor = processor if processor is not None else get_processor_client()
        self._notifier = notifier if notifier is not None else SubscriptionNotifier()
        self._clock = clock

    # ------------------------------------------------------------------
    # user-initiated transitions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        user_id: int,
        plan_type: PlanType | str,
        discount_code: str | None = None,
        return_url: str | None = None,
    ) -> TransitionResult:
        """none/pending/expired -> pending. Creates the remote subscription and returns its approval URL."""

        def run() -> TransitionResult:
            plan = _as_plan(plan_type)
            now = self._clock()
            with self._read() as db:
                snap = SubscriptionStore(db).get_or_create(user_id, now)
                if snap.status not in policy.SUBSCRIBABLE_FROM:
                    raise InvalidTransitionError(
                        "subscribe",
                        snap.status.value,
                        message=f"You already have a subscription that is {snap.status.value}.",
                    )
                plan_row = self._purchasable_plan(db, plan)
                discounts = DiscountService(db)
                discount = discounts.validate(discount_code, plan, user_id, now) if discount_code else None
                spec = discounts.plan_spec(plan_row, discount)
                discount_id = discount.id if discount is not None else None

            if snap.status is SubscriptionStatus.PENDING:
                # The superseded approval link must not be able to start billing
                self._cancel_remote(snap.remote_subscription_id, "Replaced by a new subscription request")

            success_url, cancel_url = self._return_urls(return_url)
            created = self._processor.create_subscription(
                spec,
                user_id=user_id,
                return_url=success_url,
                cancel_url=cancel_url,
                request_id=f"{user_id}-{snap.version}-{plan.value}-{discount_id or 0}",
            )

            self._commit(
                snap,
                "subscribe",
                SubscriptionStatus.PENDING,
                self._clock(),
                {
                    "plan_type": plan,
                    "remote_subscription_id": created.remote_id,
                    "auto_renewal": False,
                    "discount_code_id": discount_id,
                    "bonus_months_applied": 0,
                    **_CLEAR_SCHEDULE,
                },
                detail=created.remote_id,
            )
            return TransitionResult(
                success=True,
                new_status=SubscriptionStatus.PENDING,
                user_message="Complete the payment approval to activate your subscription.",
                applied=True,
                approval_url=created.approval_url,
            )

        return self._execute("subscribe", user_id, run)

    def confirm_activation(self, user_id: int, remote_subscription_id: str) -> TransitionResult:
        """pending -> active once the processor reports the remote subscription ACTIVE.

        The paid period is anchored on the confirmation instant, not on the
        subscribe request, so a slow approval never costs the user days.
        """

        def run() -> TransitionResult:
            snap = self._require(user_id)
            if snap.status is SubscriptionStatus.ACTIVE and snap.remote_subscription_id == remote_subscription_id:
                return self._noop(snap, "Your subscription is already active.")
            if snap.status is not SubscriptionStatus.PENDING:
                raise InvalidTransitionError("confirm_activation", snap.status.value)
            if not remote_subscription_id or snap.remote_subscription_id != remote_subscription_id:
                raise InvalidTransitionError(
                    "confirm_activation",
                    snap.status.value,
                    message="This approval does not match your pending subscription.",
                )
            with self._read() as db:
                discounts = DiscountService(db)
                bonus = discounts.bonus_months(discounts.get(snap.discount_code_id))

            remote = self._processor.fetch_status(remote_subscription_id)
            if not remote.is_active:
                raise PaymentNotConfirmedError(remote.status)

            now = self._clock()
            expires_at = policy.period_end(now, snap.plan_type, bonus)

            def redeem(db: Session) -> None:
                if snap.discount_code_id is not None:
                    DiscountService(db).redeem(
                        user_id=user_id,
                        discount_code_id=snap.discount_code_id,
                        remote_subscription_id=remote_subscription_id,
                        now=now,
                    )

            self._commit(
                snap,
                "confirm_activation",
                SubscriptionStatus.ACTIVE,
                now,
                {
                    "started_at": now,
                    "expires_at": expires_at,
                    "auto_renewal": True,
                    "cancelled_at": None,
                    "suspended_at": None,
                    "payer_id": remote.payer_id or snap.payer_id,
                    "payer_email": remote.payer_email or snap.payer_email,
                    "bonus_months_applied": bonus,
                    **_CLEAR_SCHEDULE,
                },
                within=redeem,
            )
            self._notify(NotificationKind.ACTIVATED, user_id, plan=snap.plan_type, expires_at=expires_at)
            return TransitionResult(
                success=True,
                new_status=SubscriptionStatus.ACTIVE,
                user_message=f"Your subscription is active until {_fmt_date(expires_at)}.",
                applied=True,
            )

        return self._execute("confirm_activation", user_id, run)

    def change_plan_now(self, user_id: int, plan_type: PlanType | str) -> TransitionResult:
        """active -> active on a new plan, revised at the processor within the current billing cycle."""

        def run() -> TransitionResult:
            target = _as_plan(plan_type)
            now = self._clock()
            snap = self._require(user_id)
            self._check_plan_change("change_plan_now", snap, target)
            if snap.has_scheduled_change:
                raise ScheduledChangeExistsError(snap.next_plan_type.value)
            if policy.within_renewal_guard(snap.expires_at, now):
                hours_left = policy.hours_until(snap.expires_at, now) if snap.expires_at else 0.0
                raise RenewalTooCloseError(settings.PLAN_CHANGE_GUARD_HOURS, hours_left)
            if not snap.remote_subscription_id:
                raise InvalidTransitionError(
                    "change_plan_now", snap.status.value, message="Your subscription has no payment on file to revise."
                )
            with self._read() as db:
                plan_row = self._purchasable_plan(db, target)
                discounts = DiscountService(db)
                discount = discounts.get(snap.discount_code_id)
                keep_discount = discounts.carries_over(discount, target)
                spec = discounts.plan_spec(plan_row, discount if keep_discount else None)

            success_url, cancel_url = self._return_urls()
            revised = self._processor.revise(
                snap.remote_subscription_id, spec, return_url=success_url, cancel_url=cancel_url
            )

            self._commit(
                snap,
                "change_plan_now",
                SubscriptionStatus.ACTIVE,
                self._clock(),
                {
                    "plan_type": target,
                    "discount_code_id": snap.discount_code_id if keep_discount else None,
                },
                detail=revised.processor_plan_id,
            )
            self._notify(
                NotificationKind.PLAN_CHANGE_APPLIED,
                user_id,
                plan=target,
                expires_at=snap.expires_at,
                approval_url=revised.approval_url,
            )
            message = f"Your plan has been changed to {target.value}."
            if revised.approval_url:
                message += " Please approve the change with the payment provider."
            return TransitionResult(
                success=True,
                new_status=SubscriptionStatus.ACTIVE,
                user_message=message,
                applied=True,
                approval_url=revised.approval_url,
            )

        return self._execute("change_plan_now", user_id, run)

    def schedule_plan_change(self, user_id: int, plan_type: PlanType | str) -> TransitionResult:
        """Attach a deferred plan change starting at ``expires_at``. Local only."""

        def run() -> TransitionResult:
            target = _as_plan(plan_type)
            snap = self._require(user_id)
            self._check_plan_change("schedule_plan_change", snap, target)
            if snap.has_scheduled_change:
                raise ScheduledChangeExistsError(snap.next_plan_type.value)
            if snap.expires_at is None:
                raise InvalidTransitionError(
                    "schedule_plan_change", snap.status.value, message="Your billing period has no end date yet."
                )
            with self._read() as db:
                self._purchasable_plan(db, target)

            now = self._clock()
            self._commit(
                snap,
                "schedule_plan_change",
                SubscriptionStatus.ACTIVE,
                now,
                {
                    "next_plan_type": target,
                    "next_plan_starts_at": snap.expires_at,
                    "scheduled_change_created_at": now,
                },
                detail=target.value,
            )
            self._notify(
                NotificationKind.PLAN_CHANGE_SCHEDULED,
                user_id,
                plan=snap.plan_type,
                next_plan=target,
                starts_at=snap.expires_at,
            )
            return TransitionResult(
                success=True,
                new_status=SubscriptionStatus.ACTIVE,
                user_message=(
                    f"Your plan will change to {target.value} on {_fmt_date(snap.expires_at)}. "
                    "You keep your current benefits until then."
                ),
                applied=True,
            )

        return self._execute("schedule_plan_change", user_id, run)

    def cancel_scheduled_change(self, user_id: int) -> TransitionResult:
        def run() -> TransitionResult:
            snap = self._require(user_id)
            if not snap.has_scheduled_change:
                return self._noop(snap, "No plan change is scheduled.")
            if snap.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAYMENT_FAILED):
                raise InvalidTransitionError("cancel_scheduled_change", snap.status.value)
            self._commit(
                snap,
                "cancel_scheduled_change",
                snap.status,
                self._clock(),
                dict(_CLEAR_SCHEDULE),
                detail=snap.next_plan_type.value,
            )
            return TransitionResult(
                success=True,
                new_status=snap.status,
                user_message="Your scheduled plan change has been cancelled.",
                applied=True,
            )

        return self._execute("cancel_scheduled_change", user_id, run)

    def cancel(self, user_id: int, reason: str = "Cancelled by user") -> TransitionResult:
        """active/suspended/payment_failed -> cancelled. Access persists until ``expires_at``.

        Cancelling an already cancelled or expired subscription is a successful
        no-op, and so is a processor that already shows the remote cancelled.
        """

        def run() -> TransitionResult:
            snap = self._require(user_id)
            if snap.status in policy.ALREADY_STOPPED:
                return self._noop(snap, "Your subscription is already cancelled.")
            if snap.status not in policy.CANCELLABLE_FROM:
                raise InvalidTransitionError("cancel", snap.status.value)
            failure_id = self._open_failure_id(snap)

            self._cancel_remote(snap.remote_subscription_id, reason)

            now = self._clock()
            self._commit(
                snap,
                "cancel",
                SubscriptionStatus.CANCELLED,
                now,
                {"auto_renewal": False, "cancelled_at": now, **_CLEAR_SCHEDULE},
                within=self._resolve_failure(failure_id, now, RESOLUTION_CANCELLED),
                detail=reason,
            )
            if snap.status is SubscriptionStatus.ACTIVE and snap.expires_at and snap.expires_at > now:
                message = f"Your subscription has been cancelled. You keep Premium access until {_fmt_date(snap.expires_at)}."
            else:
                message = "Your subscription has been cancelled."
            return TransitionResult(
                success=True, new_status=SubscriptionStatus.CANCELLED, user_message=message, applied=True
            )

        return self._execute("cancel", user_id, run)

    def reactivate(self, user_id: int) -> TransitionResult:
        """suspended/cancelled/expired -> active.

        When the remote subscription cannot be resumed (gone, terminal at the
        processor, or already expired locally) this falls back to a fresh
        subscribe and says so through ``resubscription_required``.
        """

        def run() -> TransitionResult:
            snap = self._require(user_id)
            if snap.status is SubscriptionStatus.ACTIVE:
                return self._noop(snap, "Your subscription is already active.")
            if snap.status not in policy.REACTIVATABLE_FROM:
                raise InvalidTransitionError("reactivate", snap.status.value)
            if snap.status is SubscriptionStatus.EXPIRED or not snap.remote_subscription_id:
                return self._resubscribe(snap)

            remote_id = snap.remote_subscription_id
            try:
                outcome = self._processor.activate(remote_id, "Reactivated by user")
                if outcome is OperationResult.ALREADY_IN_TARGET_STATE:
                    remote = self._processor.fetch_status(remote_id)
                    if not remote.is_active:
                        logger.info(
                            "Remote subscription %s for user %s is %s; resubscription required",
                            remote_id, user_id, remote.status,
                        )
                        return self._resubscribe(snap)
            except RemoteResourceGoneError:
                logger.info("Remote subscription %s for user %s is gone; resubscription required", remote_id, user_id)
                return self._resubscribe(snap)

            now = self._clock()
            changes: dict[str, Any] = {"auto_renewal": True, "cancelled_at": None, "suspended_at": None}
            expires_at = snap.expires_at
            if expires_at is None or expires_at <= now:
                expires_at = policy.period_end(now, snap.plan_type)
                changes.update(started_at=now, expires_at=expires_at)
            self._commit(snap, "reactivate", SubscriptionStatus.ACTIVE, now, changes)
            self._notify(NotificationKind.REACTIVATED, user_id, plan=snap.plan_type, expires_at=expires_at)
            return TransitionResult(
                success=True,
                new_status=SubscriptionStatus.ACTIVE,
                user_message="Your subscription has been reactivated.",
                applied=True,
            )

        return self._execute("reactivate", user_id, run)

    def suspend(self, user_id: int, reason: str = "Suspended by user") -> TransitionResult:
        """active -> suspended. Unlike cancel, premium access ends immediately."""

        def run() -> TransitionResult:
            snap = self._require(user_id)
            if snap.status is SubscriptionStatus.SUSPENDED:
                return self._noop(snap, "Your subscription is already paused.")
            if snap.status is not SubscriptionStatus.ACTIVE:
                raise InvalidTransitionError("suspend", snap.status.value)
            if snap.remote_subscription_id:
                self._processor.suspend(snap.remote_subscription_id, reason)

            now = self._clock()
            self._commit(
                snap,
                "suspend",
                SubscriptionStatus.SUSPENDED,
                now,
                {"auto_renewal": False, "suspended_at": now, **_CLEAR_SCHEDULE},
                detail=reason,
            )
            return TransitionResult(
                success=True,
                new_status=SubscriptionStatus.SUSPENDED,
                user_message="Your subscription has been paused. Premium features are unavailable until you reactivate.",
                applied=True,
            )

        return self._execute("suspend", user_id, run)

    def retry_payment(self, user_id: int) -> TransitionResult:
        """Check whether the processor's own retry collected the payment.

        Observational only: nothing is charged from here. Recovered ->
        active; otherwise the retry is counted and the row stays payment_failed.
        """

        def run() -> TransitionResult:
            snap = self._require(user_id)
            if snap.status is SubscriptionStatus.ACTIVE:
                return self._noop(snap, "Your payments are up to date.")
            if snap.status is not SubscriptionStatus.PAYMENT_FAILED:
                raise InvalidTransitionError("retry_payment", snap.status.value)
            with self._read() as db:
                failure = PaymentFailureLedger(db).open_failure(user_id)
            if failure is None or not snap.remote_subscription_id:
                raise ConflictError(user_id, snap.version, snap.status.value)

            remote = self._processor.fetch_status(snap.remote_subscription_id)
            now = self._clock()
            recovered = remote.is_healthy or (
                remote.is_active
                and remote.last_payment_at is not None
                and remote.last_payment_at >= failure.detected_at
            )

            if recovered:
                changes: dict[str, Any] = {}
                if remote.next_billing_at and (snap.expires_at is None or remote.next_billing_at > snap.expires_at):
                    changes["expires_at"] = remote.next_billing_at
                self._commit(
                    snap,
                    "retry_payment",
                    SubscriptionStatus.ACTIVE,
                    now,
                    changes,
                    within=self._resolve_failure(failure.id, now, RESOLUTION_RECOVERED),
                    detail=RESOLUTION_RECOVERED,
                )
                return TransitionResult(
                    success=True,
                    new_status=SubscriptionStatus.ACTIVE,
                    user_message="Your payment went through. Your subscription is active again.",
                    applied=True,
                )

            def count_retry(db: Session) -> None:
                PaymentFailureLedger(db).mark_retry(failure.id, now)

            self._commit(
                snap,
                "retry_payment",
                SubscriptionStatus.PAYMENT_FAILED,
                now,
                {},
                within=count_retry,
                detail=f"remote={remote.status}",
            )
            days = failure.days_remaining(now)
            return TransitionResult(
                success=False,
                new_status=SubscriptionStatus.PAYMENT_FAILED,
                user_message=(
                    f"Your payment has not gone through yet. You keep Premium access for {days} more day(s); "
                    "please check your payment method."
                ),
                retryable=True,
                applied=True,
            )

        return self._execute("retry_payment", user_id, run)

    # ------------------------------------------------------------------
    # processor-reported events
    # ------------------------------------------------------------------

    def record_payment_failure(
        self,
        user_id: int,
        remote_subscription_id: str | None = None,
        detected_at: dt.datetime | None = None,
    ) -> TransitionResult:
        """active -> payment_failed, opening a grace window. Access is kept during grace."""

        def run() -> TransitionResult:
            now = self._clock()
            detected = min(_as_utc(detected_at), now) if detected_at else now
            snap = self._require(user_id)
            if remote_subscription_id and snap.remote_subscription_id != remote_subscription_id:
                logger.info(
                    "Ignoring payment failure for user %s: remote %s is not the current subscription",
                    user_id, remote_subscription_id,
                )
                return self._noop(snap, "Payment failure ignored for a replaced subscription.")
            if snap.status is SubscriptionStatus.PAYMENT_FAILED:
                return self._noop(snap, "Payment failure already recorded.")
            if snap.status is not SubscriptionStatus.ACTIVE:
                raise InvalidTransitionError("record_payment_failure", snap.status.value)

            grace_ends = policy.grace_deadline(detected)
            opened: list[PaymentFailure] = []

            def open_failure(db: Session) -> None:
                opened.append(PaymentFailureLedger(db).record(
                    user_id=user_id,
                    remote_subscription_id=snap.remote_subscription_id,
                    detected_at=detected,
                    grace_period_ends_at=grace_ends,
                ))

            self._commit(
                snap,
                "record_payment_failure",
                SubscriptionStatus.PAYMENT_FAILED,
                now,
                {},
                within=open_failure,
                detail=f"grace_until={grace_ends.isoformat()}",
            )
            metrics.payment_failure_recorded()
            days = opened[0].days_remaining(now)
            self._notify(NotificationKind.PAYMENT_FAILED, user_id, days_remaining=days, grace_period_ends_at=grace_ends)
            return TransitionResult(
                success=True,
                new_status=SubscriptionStatus.PAYMENT_FAILED,
                user_message=f"Your payment failed. You keep Premium access for {days} more day(s).",
                applied=True,
            )

        return self._execute("record_payment_failure", user_id, run)

    def record_renewal(self, remote_subscription_id: str, paid_at: dt.datetime | None = None) -> TransitionResult:
        """A renewal charge succeeded: move ``expires_at`` forward and clear any payment failure.

        The new end is ``max(expires_at, paid_at + one period)`` so a
        redelivered event never extends the period twice.
        """
        user_id = self._user_for_remote(remote_subscription_id)

        def run() -> TransitionResult:
            if user_id is None:
                raise SubscriptionNotFoundError()
            now = self._clock()
            paid = min(_as_utc(paid_at), now) if paid_at else now
            snap = self._require(user_id)
            if snap.remote_subscription_id != remote_subscription_id:
                return self._noop(snap, "Renewal ignored for a replaced subscription.")
            if snap.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAYMENT_FAILED):
                raise InvalidTransitionError("record_renewal", snap.status.value)

            expires_at = policy.period_end(paid, snap.plan_type)
            if snap.expires_at is not None and snap.expires_at >= expires_at:
                if snap.status is SubscriptionStatus.ACTIVE:
                    return self._noop(snap, "Renewal already recorded.")
                expires_at = snap.expires_at

            failure_id = self._open_failure_id(snap)
            self._commit(
                snap,
                "record_renewal",
                SubscriptionStatus.ACTIVE,
                now,
                {"expires_at": expires_at, "auto_renewal": True},
                within=self._resolve_failure(failure_id, now, RESOLUTION_RECOVERED),
                detail=f"paid_at={paid.isoformat()}",
            )
            metrics.subscription_renewed(snap.plan_type.value)
            return TransitionResult(
                success=True,
                new_status=SubscriptionStatus.ACTIVE,
                user_message=f"Subscription renewed until {_fmt_date(expires_at)}.",
                applied=True,
            )

        return self._execute("record_renewal", user_id, run)

    def sync_remote_cancellation(self, remote_subscription_id: str) -> TransitionResult:
        """The processor cancelled the subscription on its side; mirror it locally without calling back."""
        user_id = self._user_for_remote(remote_subscription_id)

        def run() -> TransitionResult:
            if user_id is None:
                raise SubscriptionNotFoundError()
            snap = self._require(user_id)
            if snap.remote_subscription_id != remote_subscription_id:
                return self._noop(snap, "Cancellation ignored for a replaced subscription.")
            if snap.status in policy.ALREADY_STOPPED:
                return self._noop(snap, "Subscription already cancelled.")
            if snap.status not in policy.CANCELLABLE_FROM:
                raise InvalidTransitionError("sync_remote_cancellation", snap.status.value)
            failure_id = self._open_failure_id(snap)
            now = self._clock()
            self._commit(
                snap,
                "sync_remote_cancellation",
                SubscriptionStatus.CANCELLED,
                now,
                {"auto_renewal": False, "cancelled_at": now, **_CLEAR_SCHEDULE},
                within=self._resolve_failure(failure_id, now, RESOLUTION_CANCELLED),
                detail="processor",
            )
            return TransitionResult(
                success=True,
                new_status=SubscriptionStatus.CANCELLED,
                user_message="Subscription cancelled at the payment provider.",
                applied=True,
            )

        return self._execute("sync_remote_cancellation", user_id, run)

    def sync_remote_suspension(self, remote_subscription_id: str) -> TransitionResult:
        user_id = self._user_for_remote(remote_subscription_id)

        def run() -> TransitionResult:
            if user_id is None:
                raise SubscriptionNotFoundError()
            snap = self._require(user_id)
            if snap.remote_subscription_id != remote_subscription_id:
                return self._noop(snap, "Suspension ignored for a replaced subscription.")
            if snap.status is SubscriptionStatus.SUSPENDED:
                return self._noop(snap, "Subscription already suspended.")
            if snap.status is not SubscriptionStatus.ACTIVE:
                raise InvalidTransitionError("sync_remote_suspension", snap.status.value)
            now = self._clock()
            self._commit(
                snap,
                "sync_remote_suspension",
                SubscriptionStatus.SUSPENDED,
                now,
                {"auto_renewal": False, "suspended_at": now, **_CLEAR_SCHEDULE},
                detail="processor",
            )
            return TransitionResult(
                success=True,
                new_status=SubscriptionStatus.SUSPENDED,
                user_message="Subscription suspended at the payment provider.",
                applied=True,
            )

        return self._execute("sync_remote_suspension", user_id, run)

    # ------------------------------------------------------------------
    # time-driven transitions (ScheduledReconciler)
    # ------------------------------------------------------------------

    def apply_scheduled_change(self, user_id: int) -> TransitionResult:
        """Switch an active subscription into its scheduled plan once ``next_plan_starts_at`` has passed.

        The old remote subscription is cancelled before the new one is
        created, so a partial failure can leave the user briefly without a
        remote subscription but never with two. Both calls are safe to repeat
        on the next tick.
        """

        def run() -> TransitionResult:
            now = self._clock()
            snap = self._require(user_id)
            if snap.status is not SubscriptionStatus.ACTIVE:
                raise InvalidTransitionError("apply_scheduled_change", snap.status.value)
            if not snap.has_scheduled_change:
                raise SubscriptionValidationError("No plan change is scheduled.")
            if snap.next_plan_starts_at > now:
                raise SubscriptionValidationError("The scheduled plan change is not due yet.")
            target = snap.next_plan_type
            with self._read() as db:
                plan_row = self._purchasable_plan(db, target)
                discounts = DiscountService(db)
                discount = discounts.get(snap.discount_code_id)
                keep_discount = discounts.carries_over(discount, target)
                spec = discounts.plan_spec(plan_row, discount if keep_discount else None)

            self._cancel_remote(snap.remote_subscription_id, f"Switching to {target.value} plan")
            success_url, cancel_url = self._return_urls()
            created = self._processor.create_subscription(
                spec,
                user_id=user_id,
                return_url=success_url,
                cancel_url=cancel_url,
                request_id=f"sched-{user_id}-{snap.version}",
            )

            now = self._clock()
            expires_at = policy.period_end(now, target)
            self._commit(
                snap,
                "apply_scheduled_change",
                SubscriptionStatus.ACTIVE,
                now,
                {
                    "plan_type": target,
                    "remote_subscription_id": created.remote_id,
                    "started_at": now,
                    "expires_at": expires_at,
                    "auto_renewal": True,
                    "discount_code_id": snap.discount_code_id if keep_discount else None,
                    **_CLEAR_SCHEDULE,
                },
                detail=created.remote_id,
            )
            self._notify(
                NotificationKind.PLAN_CHANGE_APPLIED,
                user_id,
                plan=target,
                expires_at=expires_at,
                approval_url=created.approval_url,
            )
            return TransitionResult(
                success=True,
                new_status=SubscriptionStatus.ACTIVE,
                user_message=f"Your plan has changed to {target.value}.",
                applied=True,
                approval_url=created.approval_url,
            )

        return self._execute("apply_scheduled_change", user_id, run)

    def expire_grace_period(self, user_id: int) -> TransitionResult:
        """payment_failed -> expired after the grace window closed unresolved. Never user-initiated."""

        def run() -> TransitionResult:
            now = self._clock()
            snap = self._require(user_id)
            if snap.status is not SubscriptionStatus.PAYMENT_FAILED:
                raise InvalidTransitionError("expire_grace_period", snap.status.value)
            with self._read() as db:
                failure = PaymentFailureLedger(db).open_failure(user_id)
            if failure is None:
                raise ConflictError(user_id, snap.version, snap.status.value)
            if failure.grace_period_ends_at > now:
                raise SubscriptionValidationError("The grace period has not ended yet.")

            self._cancel_remote(snap.remote_subscription_id, "Payment not received within grace period")

            now = self._clock()
            self._commit(
                snap,
                "expire_grace_period",
                SubscriptionStatus.EXPIRED,
                now,
                {"auto_renewal": False, "cancelled_at": now, **_CLEAR_SCHEDULE},
                within=self._resolve_failure(failure.id, now, RESOLUTION_GRACE_EXPIRED),
                detail=RESOLUTION_GRACE_EXPIRED,
            )
            self._notify(NotificationKind.GRACE_PERIOD_EXPIRED, user_id, plan=snap.plan_type)
            return TransitionResult(
                success=True,
                new_status=SubscriptionStatus.EXPIRED,
                user_message="Your subscription has ended because the payment could not be collected.",
                applied=True,
            )

        return self._execute("expire_grace_period", user_id, run)

    def expire_lapsed(self, user_id: int) -> TransitionResult:
        """cancelled -> expired once the paid period is over. The remote side is already stopped."""

        def run() -> TransitionResult:
            now = self._clock()
            snap = self._require(user_id)
            if snap.status is not SubscriptionStatus.CANCELLED:
                raise InvalidTransitionError("expire_lapsed", snap.status.value)
            if snap.expires_at is not None and snap.expires_at > now:
                raise SubscriptionValidationError("The paid period has not ended yet.")
            self._commit(snap, "expire_lapsed", SubscriptionStatus.EXPIRED, now, {"auto_renewal": False})
            return TransitionResult(
                success=True,
                new_status=SubscriptionStatus.EXPIRED,
                user_message="Your subscription has expired.",
                applied=True,
            )

        return self._execute("expire_lapsed", user_id, run)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def current_status(self, user_id: int) -> SubscriptionStatus:
        with self._read() as db:
            subscription = SubscriptionStore(db).get(user_id)
        return subscription.status if subscription is not None else SubscriptionStatus.NONE

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    @contextmanager
    def _read(self) -> Generator[Session, None, None]:
        with session_scope(self._session_factory) as db:
            yield db

    def _require(self, user_id: int) -> Subscription:
        with self._read() as db:
            subscription = SubscriptionStore(db).get(user_id)
        if subscription is None:
            raise SubscriptionNotFoundError(user_id)
        return subscription

    def _user_for_remote(self, remote_subscription_id: str) -> int | None:
        with self._read() as db:
            subscription = SubscriptionStore(db).get_by_remote_id(remote_subscription_id)
        return subscription.user_id if subscription is not None else None

    def _open_failure_id(self, snap: Subscription) -> int | None:
        if snap.status is not SubscriptionStatus.PAYMENT_FAILED:
            return None
        with self._read() as db:
            failure = PaymentFailureLedger(db).open_failure(snap.user_id)
        if failure is None:
            raise ConflictError(snap.user_id, snap.version, snap.status.value)
        return failure.id

    @staticmethod
    def _resolve_failure(failure_id: int | None, now: dt.datetime, resolution: str) -> Callable[[Session], None] | None:
        if failure_id is None:
            return None

        def resolve(db: Session) -> None:
            PaymentFailureLedger(db).resolve(failure_id, now, resolution)

        return resolve

    @staticmethod
    def _purchasable_plan(db: Session, plan: PlanType) -> SubscriptionPlan:
        if not plan.is_paid:
            raise PlanNotAvailableError(plan.value)
        row = SubscriptionStore(db).get_plan(plan)
        if row is None or not row.is_active:
            raise PlanNotAvailableError(plan.value)
        return row

    @staticmethod
    def _check_plan_change(action: str, snap: Subscription, target: PlanType) -> None:
        if snap.status is not SubscriptionStatus.ACTIVE:
            raise InvalidTransitionError(action, snap.status.value)
        if not target.is_paid:
            raise InvalidTransitionError(
                action, snap.status.value, message="To move to the free plan, cancel your subscription."
            )
        if target is snap.plan_type:
            raise SubscriptionValidationError(f"You are already on the {target.value} plan.")
        if policy.is_forbidden_downgrade(snap.plan_type, target):
            raise DowngradeNotAllowedError(snap.plan_type.value, target.value)

    @staticmethod
    def _return_urls(return_url: str | None = None) -> tuple[str, str]:
        base = settings.FRONTEND_URL.rstrip("/")
        return return_url or f"{base}/subscription/success", f"{base}/subscription/cancel"

    def _cancel_remote(self, remote_id: str | None, reason: str) -> None:
        """Cancel at the processor; already-cancelled and already-purged both count as done."""
        if not remote_id:
            return
        try:
            self._processor.cancel(remote_id, reason)
        except RemoteResourceGoneError:
            logger.info("Remote subscription %s already gone; treating cancel as done", remote_id)

    def _resubscribe(self, snap: Subscription) -> TransitionResult:
        plan = snap.plan_type if snap.plan_type.is_paid else PlanType.MONTHLY
        with self._read() as db:
            spec = DiscountService(db).plan_spec(self._purchasable_plan(db, plan))
        success_url, cancel_url = self._return_urls()
        created = self._processor.create_subscription(
            spec,
            user_id=snap.user_id,
            return_url=success_url,
            cancel_url=cancel_url,
            request_id=f"{snap.user_id}-{snap.version}-{plan.value}-reactivate",
        )
        self._commit(
            snap,
            "reactivate",
            SubscriptionStatus.PENDING,
            self._clock(),
            {
                "plan_type": plan,
                "remote_subscription_id": created.remote_id,
                "auto_renewal": False,
                "discount_code_id": None,
                "bonus_months_applied": 0,
                **_CLEAR_SCHEDULE,
            },
            detail="resubscription_required",
        )
        return TransitionResult(
            success=True,
            new_status=SubscriptionStatus.PENDING,
            user_message=(
                "Your previous subscription can no longer be resumed. "
                "Approve the new subscription to reactivate Premium."
            ),
            applied=True,
            approval_url=created.approval_url,
            resubscription_required=True,
        )

    def _commit(
        self,
        snap: Subscription,
        action: str,
        to_status: SubscriptionStatus,
        now: dt.datetime,
        changes: dict[str, Any],
        within: Callable[[Session], Any] | None = None,
        detail: str | None = None,
    ) -> int:
        """CAS the row from the snapshot, run ledger work and write the audit event in one transaction."""
        try:
            with session_scope(self._session_factory) as db:
                store = SubscriptionStore(db)
                version = store.compare_and_swap(
                    snap.user_id,
                    expected_version=snap.version,
                    expected_status=snap.status,
                    now=now,
                    status=to_status,
                    **changes,
                )
                if within is not None:
                    within(db)
                store.record_event(
                    user_id=snap.user_id,
                    action=action,
                    from_status=snap.status,
                    to_status=to_status,
                    plan_before=snap.plan_type,
                    plan_after=changes.get("plan_type", snap.plan_type),
                    version=version,
                    now=now,
                    detail=detail,
                )
        except IntegrityError as exc:
            logger.info("Integrity conflict committing %s for user %s: %s", action, snap.user_id, exc.orig)
            raise ConflictError(snap.user_id, snap.version, snap.status.value) from exc

        invalidate_premium_cache(snap.user_id)
        metrics.transition_applied(action)
        log_audit_event(
            f"subscription.{action}",
            user_id=snap.user_id,
            status="success",
            from_status=snap.status.value,
            to_status=to_status.value,
            version=version,
        )
        logger.info(
            "Subscription %s applied for user %s: %s -> %s (v%s)",
            action, snap.user_id, snap.status.value, to_status.value, version,
        )
        return version

    @staticmethod
    def _noop(snap: Subscription, message: str) -> TransitionResult:
        return TransitionResult(success=True, new_status=snap.status, user_message=message)

    def _notify(self, kind: NotificationKind, user_id: int, **context: Any) -> None:
        try:
            self._notifier.notify(kind, user_id, **context)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Notification %s for user %s failed: %s", kind.value, user_id, exc)

    def _execute(self, action: str, user_id: int | None, run: Callable[[], TransitionResult]) -> TransitionResult:
        try:
            return run()
        except BillingException as exc:
            return self._rejected(action, user_id, exc)

    def _rejected(self, action: str, user_id: int | None, exc: BillingException) -> TransitionResult:
        if isinstance(exc, ProcessorFatalError):
            logger.error("Subscription %s failed for user %s at the processor: %s (%s)", action, user_id, exc.message, exc.details)
        elif exc.retryable:
            logger.warning("Subscription %s for user %s failed transiently: %s", action, user_id, exc.code)
        else:
            logger.info("Subscription %s rejected for user %s: %s", action, user_id, exc.message)

        if isinstance(exc, ConflictError):
            audit_status = "conflict"
        elif isinstance(exc, ProcessorError):
            audit_status = "failure"
        else:
            audit_status = "denied"
        metrics.transition_rejected(action, exc.code)
        log_audit_event(f"subscription.{action}", user_id=user_id, status=audit_status, code=exc.code, reason=exc.message)

        current = self.current_status(user_id) if user_id is not None else None
        return TransitionResult(
            success=False,
            new_status=current,
            user_message=exc.message,
            retryable=exc.retryable,
            error=exc,
        )
