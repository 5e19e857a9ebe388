"""Subscription lifecycle endpoints.

Each endpoint delegates to the LifecycleOrchestrator and serialises its
TransitionResult. Rejected transitions keep the orchestrator's HTTP status
(400 validation, 404 not found, 409 conflict, 502/503 processor).
"""
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.api.dependencies import CurrentUserDep, OrchestratorDep
from app.api.rate_limit import RATE_LIMITS, limiter
from app.services.subscription import TransitionResult

from .schemas import ConfirmIn, PlanChangeIn, ReasonIn, SubscribeIn, TransitionOut

logger = logging.getLogger(__name__)
router = APIRouter()

_MUTATION_LIMIT = RATE_LIMITS["subscription_mutation"]


def to_response(result: TransitionResult) -> JSONResponse:
    status_code = result.error.status_code if result.error is not None else 200
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.post("/subscribe", response_model=TransitionOut)
@limiter.limit(_MUTATION_LIMIT)
def subscribe(request: Request, data: SubscribeIn, current_user_id: CurrentUserDep, orchestrator: OrchestratorDep):
    """Start a subscription. Returns the processor approval URL the user must visit."""
    return to_response(
        orchestrator.subscribe(
            current_user_id, data.plan_type, discount_code=data.discount_code, return_url=data.return_url
        )
    )


@router.post("/confirm", response_model=TransitionOut)
@limiter.limit(_MUTATION_LIMIT)
def confirm(request: Request, data: ConfirmIn, current_user_id: CurrentUserDep, orchestrator: OrchestratorDep):
    """Confirm activation after the user approved the subscription at the processor."""
    return to_response(orchestrator.confirm_activation(current_user_id, data.remote_subscription_id))


@router.post("/change-plan", response_model=TransitionOut)
@limiter.limit(_MUTATION_LIMIT)
def change_plan(request: Request, data: PlanChangeIn, current_user_id: CurrentUserDep, orchestrator: OrchestratorDep):
    return to_response(orchestrator.change_plan_now(current_user_id, data.plan_type))


@router.post("/schedule-change", response_model=TransitionOut)
@limiter.limit(_MUTATION_LIMIT)
def schedule_change(request: Request, data: PlanChangeIn, current_user_id: CurrentUserDep, orchestrator: OrchestratorDep):
    """Switch plans at the end of the current billing period."""
    return to_response(orchestrator.schedule_plan_change(current_user_id, data.plan_type))


@router.delete("/schedule-change", response_model=TransitionOut)
@limiter.limit(_MUTATION_LIMIT)
def cancel_schedule_change(request: Request, current_user_id: CurrentUserDep, orchestrator: OrchestratorDep):
    return to_response(orchestrator.cancel_scheduled_change(current_user_id))


@router.post("/cancel", response_model=TransitionOut)
@limiter.limit(_MUTATION_LIMIT)
def cancel(request: Request, current_user_id: CurrentUserDep, orchestrator: OrchestratorDep, data: ReasonIn | None = None):
    """
    Stop auto-renewal.

    Premium access continues until the end of the paid period. Calling this
    again is harmless.
    """
    reason = (data.reason if data else None) or "Cancelled by user"
    return to_response(orchestrator.cancel(current_user_id, reason))


@router.post("/reactivate", response_model=TransitionOut)
@limiter.limit(_MUTATION_LIMIT)
def reactivate(request: Request, current_user_id: CurrentUserDep, orchestrator: OrchestratorDep):
    return to_response(orchestrator.reactivate(current_user_id))


@router.post("/suspend", response_model=TransitionOut)
@limiter.limit(_MUTATION_LIMIT)
def suspend(request: Request, current_user_id: CurrentUserDep, orchestrator: OrchestratorDep, data: ReasonIn | None = None):
    """Pause the subscription. Unlike cancel, Premium access stops immediately."""
    reason = (data.reason if data else None) or "Suspended by user"
    return to_response(orchestrator.suspend(current_user_id, reason))


@router.post("/retry-payment", response_model=TransitionOut)
@limiter.limit(_MUTATION_LIMIT)
def retry_payment(request: Request, current_user_id: CurrentUserDep, orchestrator: OrchestratorDep):
    return to_response(orchestrator.retry_payment(current_user_id))
