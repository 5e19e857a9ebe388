"""Subscription notices.

``SubscriptionNotifier.notify`` is fire-and-forget: it enqueues a Celery task
and returns. Enqueue and delivery failures are logged and never reach the
caller, so a notice can never roll back or block a transition.
"""
from __future__ import annotations

import datetime as dt
import enum
import logging
from typing import Any, Protocol

from app.core.config import settings

logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    ACTIVATED = "subscription_activated"
    PLAN_CHANGE_SCHEDULED = "plan_change_scheduled"
    PLAN_CHANGE_APPLIED = "plan_change_applied"
    PAYMENT_FAILED = "payment_failed"
    GRACE_PERIOD_EXPIRED = "grace_period_expired"
    REACTIVATED = "subscription_reactivated"


TEMPLATES: dict[NotificationKind, tuple[str, str]] = {
    NotificationKind.ACTIVATED: (
        "Welcome to GatoFit Premium",
        "Your {plan} subscription is active until {expires_at}.",
    ),
    NotificationKind.PLAN_CHANGE_SCHEDULED: (
        "Your plan change is scheduled",
        "You will move to the {next_plan} plan on {starts_at}. You keep your current benefits until then.",
    ),
    NotificationKind.PLAN_CHANGE_APPLIED: (
        "Your plan has changed",
        "You are now on the {plan} plan, active until {expires_at}.{approval_hint}",
    ),
    NotificationKind.PAYMENT_FAILED: (
        "We couldn't process your payment",
        "Your last payment failed. You keep Premium access for {days_remaining} more day(s) "
        "while we retry. Please check your payment method.",
    ),
    NotificationKind.GRACE_PERIOD_EXPIRED: (
        "Your Premium subscription has ended",
        "We could not collect your payment, so your subscription has ended. Subscribe again any time.",
    ),
    NotificationKind.REACTIVATED: (
        "Your subscription is active again",
        "Welcome back! Your {plan} subscription has been reactivated.",
    ),
}


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render(kind: NotificationKind, context: dict[str, Any]) -> tuple[str, str]:
    subject, body = TEMPLATES[kind]
    values = _SafeDict(context)
    if context.get("approval_url"):
        values["approval_hint"] = f" Please confirm the new plan with the payment provider: {context['approval_url']}"
    return subject, body.format_map(values)


def _jsonable(context: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in context.items():
        if isinstance(value, dt.datetime):
            out[key] = value.strftime("%B %d, %Y")
        elif isinstance(value, enum.Enum):
            out[key] = value.value
        else:
            out[key] = value
    return out


class Notifier(Protocol):
    def notify(self, kind: NotificationKind, user_id: int, **context: Any) -> None: ...


class SubscriptionNotifier:
    """Queues subscription notices for background delivery."""

    def notify(self, kind: NotificationKind, user_id: int, **context: Any) -> None:
        payload = _jsonable(context)
        if not settings.NOTIFICATIONS_ENABLED:
            logger.info("Notification %s for user %s (delivery disabled)", kind.value, user_id)
            return
        try:
            from app.workers.tasks.notification_tasks import send_subscription_notice

            send_subscription_notice.delay(kind.value, user_id, payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to enqueue %s notification for user %s: %s", kind.value, user_id, exc)
