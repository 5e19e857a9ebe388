"""Premium access checks derived from the subscription row.

Reads only. The Redis cache in front of it is an optimisation: every applied
transition deletes the user's key, and cached entries never outlive the
row's ``expires_at`` or an open grace window.
"""
from __future__ import annotations

import datetime as dt
import logging
from typing import Callable

from sqlalchemy.orm import sessionmaker

from app.core.cache import cache_delete, cache_get, cache_set
from app.core.config import settings
from app.db.session import SessionLocal
from app.models.subscription_models import PaymentFailure, Subscription, SubscriptionStatus, utcnow
from app.services.subscription.ledger import PaymentFailureLedger
from app.services.subscription.store import SubscriptionStore

logger = logging.getLogger(__name__)

# Paying and current
ALWAYS_PREMIUM = frozenset({SubscriptionStatus.ACTIVE})
# Not renewing, but keep the period already paid for
PAID_THROUGH = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.PENDING})


def cache_key(user_id: int) -> str:
    return f"premium:{user_id}"


def invalidate_premium_cache(user_id: int) -> None:
    cache_delete(cache_key(user_id))


def is_premium_subscription(
    subscription: Subscription | None,
    now: dt.datetime,
    failure: PaymentFailure | None = None,
) -> bool:
    """``failure`` is the open payment failure; a failed payment keeps access only inside its grace window."""
    if subscription is None:
        return False
    if subscription.status in ALWAYS_PREMIUM:
        return True
    if subscription.status is SubscriptionStatus.PAYMENT_FAILED:
        return failure is not None and now < failure.grace_period_ends_at
    if subscription.status in PAID_THROUGH:
        return subscription.expires_at is not None and now < subscription.expires_at
    # suspended revokes access immediately; none/expired never had or lost it
    return False


class PremiumGate:
    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        clock: Callable[[], dt.datetime] = utcnow,
        use_cache: bool = True,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._clock = clock
        self._use_cache = use_cache

    def is_premium(self, user_id: int) -> bool:
        if self._use_cache:
            cached = cache_get(cache_key(user_id))
            if cached is not None:
                return bool(cached)

        now = self._clock()
        db = self._session_factory()
        try:
            subscription = SubscriptionStore(db).get(user_id)
            failure = None
            if subscription is not None and subscription.status is SubscriptionStatus.PAYMENT_FAILED:
                failure = PaymentFailureLedger(db).open_failure(user_id)
        finally:
            db.close()
        premium = is_premium_subscription(subscription, now, failure)

        if self._use_cache:
            ttl = settings.PREMIUM_CACHE_TTL_SECONDS
            deadlines = [subscription.expires_at if subscription is not None else None]
            if failure is not None:
                deadlines.append(failure.grace_period_ends_at)
            for deadline in deadlines:
                if deadline is not None and deadline > now:
                    ttl = min(ttl, max(int((deadline - now).total_seconds()), 1))
            cache_set(cache_key(user_id), premium, ttl=ttl)
        return premium
