"""
Subscription Tasks.

Periodic reconciler tick, scheduled by Celery beat.
"""
from __future__ import annotations

import logging

from app.workers.celery_app import RECONCILE_TASK, celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name=RECONCILE_TASK, ignore_result=False)
def reconcile_subscriptions() -> dict[str, int]:
    """Run one reconciler tick.

    Not auto-retried: anything that failed is picked up again by the next tick.
    """
    from app.services.subscription import LifecycleOrchestrator, ScheduledReconciler

    counts = ScheduledReconciler(LifecycleOrchestrator()).run_once()
    if counts["failed"]:
        logger.warning("Reconciler tick finished with %s failed item(s)", counts["failed"])
    return counts
