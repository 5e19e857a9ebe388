"""Inbound PayPal subscription events.

Every event is signature-checked through PayPal, then mapped onto a
LifecycleOrchestrator entry point. Processed event ids are stored so
redeliveries are acknowledged without running the transition again. A
transition that failed for a retryable reason is answered with 503 and not
stored, so PayPal delivers it again later.
"""
import datetime as dt
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import metrics
from app.api.dependencies import DbDep, OrchestratorDep, ProcessorDep
from app.api.rate_limit import RATE_LIMITS, limiter
from app.core.exceptions import GENERIC_RETRY_MESSAGE, ConflictError
from app.models.webhook_models import ProcessorWebhookEvent
from app.services.subscription import LifecycleOrchestrator, SubscriptionStore, TransitionResult

logger = logging.getLogger(__name__)
router = APIRouter()

PROVIDER = "paypal"

PAYMENT_FAILED_EVENTS = frozenset({"BILLING.SUBSCRIPTION.PAYMENT.FAILED", "PAYMENT.SALE.DENIED"})
RENEWAL_EVENTS = frozenset({"PAYMENT.SALE.COMPLETED"})
SALE_EVENTS = frozenset({"PAYMENT.SALE.COMPLETED", "PAYMENT.SALE.DENIED"})


def _parse_time(value: str | None) -> dt.datetime | None:
    if not value:
        return None
    try:
        return dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _remote_id(event_type: str, resource: dict) -> str | None:
    # Sale resources point at the subscription through billing_agreement_id
    if event_type in SALE_EVENTS:
        return resource.get("billing_agreement_id")
    return resource.get("id")


def _already_processed(db: Session, external_id: str) -> bool:
    return db.execute(
        select(ProcessorWebhookEvent.id).where(
            ProcessorWebhookEvent.provider == PROVIDER,
            ProcessorWebhookEvent.external_id == external_id,
        )
    ).first() is not None


def _record_webhook(db: Session, external_id: str, event_type: str, resource_id: str | None, outcome: str) -> bool:
    """Store the processed event id. Returns False if a concurrent delivery stored it first."""
    db.add(
        ProcessorWebhookEvent(
            provider=PROVIDER,
            external_id=external_id,
            event_type=event_type,
            resource_id=resource_id,
            outcome=outcome,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def _dispatch(
    orchestrator: LifecycleOrchestrator,
    db: Session,
    event_type: str,
    remote_id: str,
    event_time: dt.datetime | None,
) -> TransitionResult | None:
    if event_type in RENEWAL_EVENTS:
        return orchestrator.record_renewal(remote_id, paid_at=event_time)
    if event_type == "BILLING.SUBSCRIPTION.CANCELLED":
        return orchestrator.sync_remote_cancellation(remote_id)
    if event_type == "BILLING.SUBSCRIPTION.SUSPENDED":
        return orchestrator.sync_remote_suspension(remote_id)

    subscription = SubscriptionStore(db).get_by_remote_id(remote_id)
    db.rollback()
    if subscription is None:
        return None
    if event_type in PAYMENT_FAILED_EVENTS:
        return orchestrator.record_payment_failure(
            subscription.user_id, remote_subscription_id=remote_id, detected_at=event_time
        )
    if event_type == "BILLING.SUBSCRIPTION.ACTIVATED":
        return orchestrator.confirm_activation(subscription.user_id, remote_id)
    return None


HANDLED_EVENTS = PAYMENT_FAILED_EVENTS | RENEWAL_EVENTS | {
    "BILLING.SUBSCRIPTION.CANCELLED",
    "BILLING.SUBSCRIPTION.SUSPENDED",
    "BILLING.SUBSCRIPTION.ACTIVATED",
}


@router.post("/paypal")
@limiter.limit(RATE_LIMITS["webhook_paypal"])
def paypal_webhook(request: Request, db: DbDep, orchestrator: OrchestratorDep, processor: ProcessorDep, payload: dict):
    """Handle PayPal subscription lifecycle events."""
    event_id = payload.get("id")
    event_type = (payload.get("event_type") or "").upper()
    resource = payload.get("resource") or {}
    if not event_id or not event_type or not isinstance(resource, dict):
        raise HTTPException(status_code=400, detail="Malformed event")

    if not processor.verify_webhook_signature(dict(request.headers), payload):
        logger.warning("PayPal webhook %s (%s) failed signature verification", event_id, event_type)
        metrics.webhook_received(event_type, "invalid_signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    if _already_processed(db, event_id):
        logger.info("PayPal webhook duplicate %s (%s)", event_id, event_type)
        metrics.webhook_received(event_type, "duplicate")
        return {"status": "duplicate", "event_id": event_id}

    remote_id = _remote_id(event_type, resource)
    if event_type not in HANDLED_EVENTS or not remote_id:
        outcome = "ignored"
        result = None
    else:
        event_time = _parse_time(resource.get("create_time") or payload.get("create_time"))
        result = _dispatch(orchestrator, db, event_type, remote_id, event_time)
        if result is None or (result.error is not None and result.error.code == "SUB010"):
            logger.info("PayPal webhook %s for unknown subscription %s", event_type, remote_id)
            outcome = "unknown_subscription"
        elif result.success:
            outcome = "applied" if result.applied else "noop"
        elif result.retryable or isinstance(result.error, ConflictError):
            logger.warning("PayPal webhook %s for %s failed transiently; awaiting redelivery", event_type, remote_id)
            metrics.webhook_received(event_type, "retry")
            return JSONResponse(
                status_code=503,
                content={"status": "retry", "user_message": GENERIC_RETRY_MESSAGE, "event_id": event_id},
            )
        else:
            outcome = "rejected"
            logger.info("PayPal webhook %s for %s not applied: %s", event_type, remote_id, result.user_message)

    if not _record_webhook(db, event_id, event_type, remote_id, outcome):
        metrics.webhook_received(event_type, "duplicate")
        return {"status": "duplicate", "event_id": event_id}
    metrics.webhook_received(event_type, outcome)
    logger.info("PayPal webhook %s (%s) -> %s", event_id, event_type, outcome)
    return {"status": outcome, "event_id": event_id}
