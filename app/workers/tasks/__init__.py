"""
Celery Tasks Module.

All tasks are registered with the Celery app.

Sub-modules:
- subscription_tasks: Scheduled reconciler tick
- notification_tasks: Subscription notice delivery
"""
from __future__ import annotations

from .notification_tasks import send_subscription_notice
from .subscription_tasks import reconcile_subscriptions

__all__ = [
    "reconcile_subscriptions",
    "send_subscription_notice",
]
