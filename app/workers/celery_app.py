"""Celery application: notification delivery and the periodic reconciler tick."""
from __future__ import annotations

from celery import Celery

from app.core.config import settings
from app.core.redis_utils import get_ssl_options, prepare_redis_url

RECONCILE_TASK = "subscriptions.reconcile"


def _beat_schedule() -> dict[str, dict]:
    interval = settings.RECONCILER_INTERVAL_MINUTES * 60.0
    return {
        "subscription-reconciler": {
            "task": RECONCILE_TASK,
            "schedule": interval,
            # A tick older than the interval is superseded by the next one
            "options": {"expires": interval},
        }
    }


def _create_celery() -> Celery:
    redis_url = prepare_redis_url(settings.REDIS_URL)
    is_test = settings.ENV.lower() == "test"
    celery = Celery("gatofit_billing", broker=redis_url, backend=redis_url, include=["app.workers.tasks"])
    celery.conf.update(
        task_default_queue="billing",
        task_routes={"notifications.*": {"queue": "notifications"}},
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        result_expires=3600,
        timezone="UTC",
        enable_utc=True,
        worker_prefetch_multiplier=1,
        task_acks_late=True,
        task_always_eager=is_test,
    )
    ssl_options = get_ssl_options()
    if ssl_options:
        celery.conf.update(broker_use_ssl=ssl_options, redis_backend_use_ssl=ssl_options)
    if not is_test:
        celery.conf.beat_schedule = _beat_schedule()
    return celery


celery_app = _create_celery()
