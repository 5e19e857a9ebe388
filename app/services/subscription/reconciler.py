"""ScheduledReconciler: drives time-based transitions.

The reconciler only reads to find due rows; every change goes through the
LifecycleOrchestrator, which re-validates the row with a compare-and-swap.
A row that stopped being eligible between the scan and the drive (say the
user cancelled in between) comes back as a rejected transition and is
counted as skipped.
"""
from __future__ import annotations

import datetime as dt
import logging
import time
from typing import Callable

from sqlalchemy.orm import sessionmaker

from app import metrics
from app.core.config import settings
from app.core.exceptions import ProcessorError
from app.db.session import SessionLocal, session_scope
from app.models.subscription_models import utcnow

from .ledger import PaymentFailureLedger
from .orchestrator import LifecycleOrchestrator, TransitionResult
from .store import SubscriptionStore

logger = logging.getLogger(__name__)

KIND_SCHEDULED_CHANGE = "scheduled_change"
KIND_GRACE_EXPIRY = "grace_expiry"
KIND_LAPSED = "lapsed_cancellation"


class ScheduledReconciler:
    def __init__(
        self,
        orchestrator: LifecycleOrchestrator,
        session_factory: sessionmaker | None = None,
        clock: Callable[[], dt.datetime] = utcnow,
        batch_size: int | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._session_factory = session_factory or SessionLocal
        self._clock = clock
        self._batch_size = batch_size or settings.RECONCILER_BATCH_SIZE

    def run_once(self) -> dict[str, int]:
        """One tick: due scheduled changes, then expired grace periods, then lapsed cancellations.

        Errors for one user are logged and counted; they never stop the batch.
        Processor failures are left for the next tick, with no retry here
        beyond the client's own budget.
        """
        started = time.monotonic()
        now = self._clock()
        counts = {"scheduled_changes": 0, "grace_expired": 0, "lapsed": 0, "skipped": 0, "failed": 0}

        with session_scope(self._session_factory) as db:
            store = SubscriptionStore(db)
            scheduled = [s.user_id for s in store.due_scheduled_changes(now, self._batch_size)]
            grace = [f.user_id for f in PaymentFailureLedger(db).expired_grace_periods(now, self._batch_size)]
            lapsed = [s.user_id for s in store.lapsed_cancellations(now, self._batch_size)]

        for user_id in scheduled:
            self._drive(KIND_SCHEDULED_CHANGE, user_id, self._orchestrator.apply_scheduled_change, "scheduled_changes", counts)
        for user_id in grace:
            self._drive(KIND_GRACE_EXPIRY, user_id, self._orchestrator.expire_grace_period, "grace_expired", counts)
        for user_id in lapsed:
            self._drive(KIND_LAPSED, user_id, self._orchestrator.expire_lapsed, "lapsed", counts)

        duration = time.monotonic() - started
        metrics.reconciler_run(duration)
        logger.info(
            "Reconciler tick at %s: %s (%.2fs)",
            now.isoformat(), ", ".join(f"{k}={v}" for k, v in counts.items()), duration,
        )
        return counts

    def _drive(
        self,
        kind: str,
        user_id: int,
        transition: Callable[[int], TransitionResult],
        applied_key: str,
        counts: dict[str, int],
    ) -> None:
        try:
            result = transition(user_id)
        except Exception:  # noqa: BLE001
            logger.exception("Reconciler %s crashed for user %s", kind, user_id)
            counts["failed"] += 1
            metrics.reconciler_item(kind, "error")
            return

        if result.success and result.applied:
            counts[applied_key] += 1
            outcome = "applied"
        elif isinstance(result.error, ProcessorError):
            counts["failed"] += 1
            outcome = "failed"
            logger.warning("Reconciler %s for user %s deferred to next tick: %s", kind, user_id, result.error.code)
        else:
            counts["skipped"] += 1
            outcome = "skipped"
            logger.info("Reconciler %s for user %s skipped: %s", kind, user_id, result.user_message)
        metrics.reconciler_item(kind, outcome)
