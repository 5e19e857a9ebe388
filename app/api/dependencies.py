"""Common dependencies for subscription endpoints."""
from functools import lru_cache
from typing import Annotated, TypeAlias

from fastapi import Depends
from sqlalchemy.orm import Session

from app.api.routes_auth import get_current_user_id
from app.db.session import get_db
from app.services.processor import ProcessorClient, get_processor_client
from app.services.subscription import LifecycleOrchestrator, PremiumGate

CurrentUserDep: TypeAlias = Annotated[int, Depends(get_current_user_id)]
DbDep: TypeAlias = Annotated[Session, Depends(get_db)]


@lru_cache
def get_orchestrator() -> LifecycleOrchestrator:
    """Process-wide orchestrator; it holds no per-request state."""
    return LifecycleOrchestrator()


@lru_cache
def get_premium_gate() -> PremiumGate:
    return PremiumGate()


OrchestratorDep: TypeAlias = Annotated[LifecycleOrchestrator, Depends(get_orchestrator)]
PremiumGateDep: TypeAlias = Annotated[PremiumGate, Depends(get_premium_gate)]


def get_processor() -> ProcessorClient:
    return get_processor_client()


ProcessorDep: TypeAlias = Annotated[ProcessorClient, Depends(get_processor)]
