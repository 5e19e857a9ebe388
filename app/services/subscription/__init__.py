"""Subscription lifecycle: store, payment-failure ledger, orchestrator and reconciler."""
from .ledger import PaymentFailureLedger
from .orchestrator import LifecycleOrchestrator, TransitionResult
from .premium_gate import PremiumGate, invalidate_premium_cache, is_premium_subscription
from .reconciler import ScheduledReconciler
from .store import SubscriptionStore

__all__ = [
    "LifecycleOrchestrator",
    "PaymentFailureLedger",
    "PremiumGate",
    "ScheduledReconciler",
    "SubscriptionStore",
    "TransitionResult",
    "invalidate_premium_cache",
    "is_premium_subscription",
]
