from __future__ import annotations

import datetime as dt

import pytest

from app.db.session import SessionLocal
from app.models.subscription_models import PaymentFailure, PlanType, Subscription, SubscriptionStatus
from app.services.subscription import PremiumGate, is_premium_subscription
from app.services.subscription.premium_gate import cache_key

NOW = dt.datetime(2025, 2, 10, tzinfo=dt.timezone.utc)
FUTURE = NOW + dt.timedelta(days=5)
PAST = NOW - dt.timedelta(days=1)


def _sub(status: SubscriptionStatus, expires_at: dt.datetime | None) -> Subscription:
    return Subscription(user_id=1, plan_type=PlanType.MONTHLY, status=status, version=1, expires_at=expires_at)


class TestIsPremiumSubscription:
    @pytest.mark.parametrize(
        "status,expires_at,expected",
        [
            (SubscriptionStatus.ACTIVE, FUTURE, True),
            (SubscriptionStatus.ACTIVE, PAST, True),
            (SubscriptionStatus.CANCELLED, FUTURE, True),
            (SubscriptionStatus.CANCELLED, PAST, False),
            (SubscriptionStatus.PENDING, FUTURE, True),
            (SubscriptionStatus.PENDING, None, False),
            (SubscriptionStatus.SUSPENDED, FUTURE, False),
            (SubscriptionStatus.EXPIRED, FUTURE, False),
            (SubscriptionStatus.NONE, None, False),
        ],
    )
    def test_status_matrix(self, status, expires_at, expected):
        assert is_premium_subscription(_sub(status, expires_at), NOW) is expected

    def test_no_row_is_not_premium(self):
        assert is_premium_subscription(None, NOW) is False

    def test_payment_failure_keeps_access_only_during_grace(self):
        row = _sub(SubscriptionStatus.PAYMENT_FAILED, PAST)
        failure = PaymentFailure(user_id=1, detected_at=PAST, grace_period_ends_at=NOW + dt.timedelta(hours=1))
        assert is_premium_subscription(row, NOW, failure) is True
        assert is_premium_subscription(row, NOW + dt.timedelta(hours=1), failure) is False
        assert is_premium_subscription(row, NOW) is False


class TestPremiumGate:
    def test_reads_through_to_store(self, activate, premium_gate):
        activate(1)
        assert premium_gate.is_premium(1) is True
        assert premium_gate.is_premium(2) is False

    def test_cache_entry_is_bounded_by_expiry(self, activate, clock, memory_cache):
        activate(1)
        clock.advance(days=27, hours=23)  # one hour before monthly expiry
        gate = PremiumGate(SessionLocal, clock=clock)
        assert gate.is_premium(1) is True
        assert memory_cache.ttls[cache_key(1)] <= 3600

    def test_transition_invalidates_cached_answer(self, activate, orchestrator, clock):
        activate(1)
        gate = PremiumGate(SessionLocal, clock=clock)
        assert gate.is_premium(1) is True
        assert orchestrator.suspend(1).success
        assert gate.is_premium(1) is False

    def test_suspended_user_loses_access_immediately(self, activate, orchestrator, premium_gate):
        activate(1)
        orchestrator.suspend(1)
        assert premium_gate.is_premium(1) is False

    def test_cancelled_user_keeps_access_until_expiry(self, activate, orchestrator, premium_gate, clock):
        activate(1)
        orchestrator.cancel(1)
        assert premium_gate.is_premium(1) is True
        clock.advance(days=40)
        assert premium_gate.is_premium(1) is False

    def test_cache_entry_is_bounded_by_grace_deadline(self, activate, orchestrator, clock, memory_cache):
        activate(1)
        clock.set(NOW)
        orchestrator.record_payment_failure(1)
        clock.advance(days=2, hours=23, minutes=59)
        gate = PremiumGate(SessionLocal, clock=clock)
        assert gate.is_premium(1) is True
        assert memory_cache.ttls[cache_key(1)] <= 60
