import logging

from app.core.config import settings

logger = logging.getLogger(__name__)
_initialized = False


def _before_send(event, hint):
    # Processor rejections are expected outcomes and already audited
    exc_info = hint.get("exc_info") if hint else None
    if exc_info:
        from app.core.exceptions import BillingException

        if isinstance(exc_info[1], BillingException) and not exc_info[1].retryable and exc_info[1].status_code < 500:
            return None
    return event


def init_monitoring() -> None:
    """Initialise Sentry for the API and the reconciler workers when a DSN is configured."""
    global _initialized
    if _initialized or not settings.SENTRY_DSN:
        _initialized = True
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.celery import CeleryIntegration
        from sentry_sdk.integrations.fastapi import FastApiIntegration

        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration(), CeleryIntegration(monitor_beat_tasks=True)],
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            environment=settings.ENV,
            release=f"gatofit-billing@{settings.ENV}",
            send_default_pii=False,
            before_send=_before_send,
        )
        logger.info("Sentry initialised for %s", settings.ENV)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to init Sentry: %s", exc)
    _initialized = True
