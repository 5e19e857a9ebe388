"""Payment processor integration (PayPal Subscriptions)."""
from .client import PayPalClient, get_processor_client
from .types import (
    CreatedSubscription,
    Credential,
    OperationResult,
    PlanSpec,
    ProcessorClient,
    RemoteStatus,
    RevisedSubscription,
)

__all__ = [
    "PayPalClient",
    "get_processor_client",
    "CreatedSubscription",
    "Credential",
    "OperationResult",
    "PlanSpec",
    "ProcessorClient",
    "RemoteStatus",
    "RevisedSubscription",
]
