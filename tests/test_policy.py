import datetime as dt

import pytest

from app.models.subscription_models import PlanType
from app.services.subscription import policy

UTC = dt.timezone.utc


class TestPeriodEnd:
    def test_monthly_adds_one_calendar_month(self):
        start = dt.datetime(2025, 2, 1, 9, 30, tzinfo=UTC)
        assert policy.period_end(start, PlanType.MONTHLY) == dt.datetime(2025, 3, 1, 9, 30, tzinfo=UTC)

    def test_month_end_is_clamped(self):
        start = dt.datetime(2025, 1, 31, tzinfo=UTC)
        assert policy.period_end(start, PlanType.MONTHLY) == dt.datetime(2025, 2, 28, tzinfo=UTC)
        leap = dt.datetime(2024, 1, 31, tzinfo=UTC)
        assert policy.period_end(leap, PlanType.MONTHLY) == dt.datetime(2024, 2, 29, tzinfo=UTC)

    def test_yearly_adds_twelve_months(self):
        start = dt.datetime(2024, 2, 29, tzinfo=UTC)
        assert policy.period_end(start, PlanType.YEARLY) == dt.datetime(2025, 2, 28, tzinfo=UTC)

    def test_bonus_months_extend_the_period(self):
        start = dt.datetime(2025, 11, 15, tzinfo=UTC)
        assert policy.period_end(start, PlanType.MONTHLY, bonus_months=2) == dt.datetime(2026, 2, 15, tzinfo=UTC)

    def test_free_plan_has_no_period(self):
        with pytest.raises(ValueError):
            policy.period_end(dt.datetime(2025, 1, 1, tzinfo=UTC), PlanType.FREE)


class TestPlanChangeRules:
    @pytest.mark.parametrize(
        "current,requested,forbidden",
        [
            (PlanType.YEARLY, PlanType.MONTHLY, True),
            (PlanType.MONTHLY, PlanType.YEARLY, False),
            (PlanType.FREE, PlanType.MONTHLY, False),
        ],
    )
    def test_forbidden_downgrade(self, current, requested, forbidden):
        assert policy.is_forbidden_downgrade(current, requested) is forbidden

    def test_renewal_guard(self):
        now = dt.datetime(2025, 2, 1, tzinfo=UTC)
        assert policy.within_renewal_guard(now + dt.timedelta(hours=2), now) is True
        assert policy.within_renewal_guard(now + dt.timedelta(hours=24), now) is False
        assert policy.within_renewal_guard(None, now) is True
        assert policy.within_renewal_guard(now + dt.timedelta(hours=30), now, guard_hours=48) is True

    def test_grace_deadline_uses_configured_days(self):
        detected = dt.datetime(2025, 2, 1, tzinfo=UTC)
        assert policy.grace_deadline(detected) == detected + dt.timedelta(days=3)
        assert policy.grace_deadline(detected, days=7) == detected + dt.timedelta(days=7)
