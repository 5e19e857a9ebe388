"""
Notification Tasks.

Delivers subscription notices by email to the payer address on file.
"""
from __future__ import annotations

import logging
from typing import Any

from app.db.session import session_scope
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="notifications.send_subscription_notice")
def send_subscription_notice(kind: str, user_id: int, context: dict[str, Any]) -> bool:
    """Render and send one notice. Returns True when an email went out."""
    from app.services.notification.channels.email import EmailChannel
    from app.services.notification.service import NotificationKind, render
    from app.services.subscription.store import SubscriptionStore

    try:
        notice = NotificationKind(kind)
    except ValueError:
        logger.warning("Unknown notification kind %s for user %s", kind, user_id)
        return False

    with session_scope() as db:
        subscription = SubscriptionStore(db).get(user_id)
        recipient = subscription.payer_email if subscription is not None else None

    subject, body = render(notice, context)
    if not recipient:
        logger.info("No email on file for user %s; %s notice: %s", user_id, notice.value, subject)
        return False
    sent = EmailChannel().send(recipient, subject, body)
    if sent:
        logger.info("Sent %s notice to user %s", notice.value, user_id)
    return sent
