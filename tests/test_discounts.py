from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from app.core.exceptions import DiscountCodeError
from app.db.session import SessionLocal
from app.models.discount_models import (
    ApplicationType,
    DiscountCode,
    DiscountRedemption,
    DiscountType,
    UsageType,
)
from app.models.subscription_models import PlanType
from app.services.subscription import SubscriptionStore
from app.services.subscription.discounts import DiscountService

from conftest import START, load


def _code(db, code: str, discount_type: DiscountType, **fields) -> DiscountCode:
    discount = DiscountCode(code=code, discount_type=discount_type, **fields)
    db.add(discount)
    db.commit()
    return discount


class TestValidation:
    def test_lookup_is_case_insensitive(self, db_session):
        _code(db_session, "welcome10", DiscountType.PERCENTAGE, percentage_off=Decimal("10"))
        found = DiscountService(db_session).validate("  WELCOME10 ", PlanType.MONTHLY, 1, START)
        assert found.code == "welcome10"

    def test_unknown_and_inactive_codes_rejected(self, db_session):
        _code(db_session, "off", DiscountType.PERCENTAGE, percentage_off=Decimal("10"), is_active=False)
        service = DiscountService(db_session)
        with pytest.raises(DiscountCodeError):
            service.validate("nope", PlanType.MONTHLY, 1, START)
        with pytest.raises(DiscountCodeError):
            service.validate("off", PlanType.MONTHLY, 1, START)

    def test_plan_restriction(self, db_session):
        _code(db_session, "yearonly", DiscountType.FIXED, amount_off_usd=Decimal("5"), applicable_plans=["yearly"])
        service = DiscountService(db_session)
        with pytest.raises(DiscountCodeError, match="not valid for the selected plan"):
            service.validate("yearonly", PlanType.MONTHLY, 1, START)
        assert service.validate("yearonly", PlanType.YEARLY, 1, START).code == "yearonly"

    def test_validity_window_and_usage_cap(self, db_session):
        _code(db_session, "later", DiscountType.PERCENTAGE, percentage_off=Decimal("10"), valid_from=START + dt.timedelta(days=1))
        _code(db_session, "gone", DiscountType.PERCENTAGE, percentage_off=Decimal("10"), valid_to=START - dt.timedelta(days=1))
        _code(db_session, "full", DiscountType.PERCENTAGE, percentage_off=Decimal("10"), max_uses=1, current_uses=1)
        service = DiscountService(db_session)
        for code in ("later", "gone", "full"):
            with pytest.raises(DiscountCodeError):
                service.validate(code, PlanType.MONTHLY, 1, START)

    def test_single_use_per_user(self, db_session):
        discount = _code(db_session, "once", DiscountType.PERCENTAGE, percentage_off=Decimal("10"), usage_type=UsageType.SINGLE_USE)
        service = DiscountService(db_session)
        assert service.redeem(user_id=1, discount_code_id=discount.id, remote_subscription_id="I-1", now=START) is True
        db_session.commit()
        with pytest.raises(DiscountCodeError, match="already used"):
            service.validate("once", PlanType.MONTHLY, 1, START)
        assert service.validate("once", PlanType.MONTHLY, 2, START).id == discount.id


class TestPricing:
    def test_percentage_first_cycle_only(self, db_session):
        discount = _code(db_session, "half", DiscountType.PERCENTAGE, percentage_off=Decimal("50"))
        plan = SubscriptionStore(db_session).get_plan(PlanType.YEARLY)
        spec = DiscountService(db_session).plan_spec(plan, discount)
        assert spec.price_usd == Decimal("39.99")
        assert spec.first_cycle_price_usd == Decimal("20.00")

    def test_fixed_forever_discount_changes_regular_price(self, db_session):
        discount = _code(
            db_session, "loyal", DiscountType.FIXED, amount_off_usd=Decimal("1.00"), application_type=ApplicationType.FOREVER
        )
        plan = SubscriptionStore(db_session).get_plan(PlanType.MONTHLY)
        spec = DiscountService(db_session).plan_spec(plan, discount)
        assert spec.price_usd == Decimal("3.99")
        assert spec.first_cycle_price_usd is None

    def test_fixed_discount_never_goes_negative(self):
        discount = DiscountCode(code="big", discount_type=DiscountType.FIXED, amount_off_usd=Decimal("100"))
        assert DiscountService.discounted_price(Decimal("4.99"), discount) == Decimal("0.00")

    def test_months_free_keeps_price_and_adds_bonus(self, db_session):
        discount = _code(db_session, "twofree", DiscountType.MONTHS_FREE, duration_months=2)
        plan = SubscriptionStore(db_session).get_plan(PlanType.MONTHLY)
        service = DiscountService(db_session)
        spec = service.plan_spec(plan, discount)
        assert spec.price_usd == Decimal("4.99")
        assert spec.first_cycle_price_usd is None
        assert service.bonus_months(discount) == 2

    def test_only_forever_discounts_carry_over(self):
        forever = DiscountCode(
            code="a", discount_type=DiscountType.PERCENTAGE, application_type=ApplicationType.FOREVER, applicable_plans=["both"]
        )
        first = DiscountCode(code="b", discount_type=DiscountType.PERCENTAGE, application_type=ApplicationType.FIRST_BILLING_ONLY)
        assert DiscountService.carries_over(forever, PlanType.YEARLY) is True
        assert DiscountService.carries_over(first, PlanType.YEARLY) is False
        assert DiscountService.carries_over(None, PlanType.YEARLY) is False


class TestDiscountsThroughLifecycle:
    def test_discount_is_redeemed_only_on_activation(self, db_session, orchestrator, processor):
        _code(db_session, "welcome10", DiscountType.PERCENTAGE, percentage_off=Decimal("10"))

        result = orchestrator.subscribe(1, PlanType.MONTHLY, discount_code="welcome10")
        assert result.success
        assert processor.plans[-1].first_cycle_price_usd == Decimal("4.49")

        session = SessionLocal()
        try:
            assert session.query(DiscountRedemption).count() == 0
        finally:
            session.close()

        remote_id = load(1).remote_subscription_id
        processor.remote[remote_id] = "ACTIVE"
        assert orchestrator.confirm_activation(1, remote_id).success

        session = SessionLocal()
        try:
            redemption = session.query(DiscountRedemption).one()
            assert redemption.user_id == 1
            assert redemption.remote_subscription_id == remote_id
            assert session.query(DiscountCode).filter_by(code="welcome10").one().current_uses == 1
        finally:
            session.close()

    def test_months_free_extends_first_period(self, db_session, activate):
        _code(db_session, "twofree", DiscountType.MONTHS_FREE, duration_months=2)
        activate(1, PlanType.MONTHLY, discount_code="twofree")
        row = load(1)
        assert row.bonus_months_applied == 2
        assert row.expires_at == dt.datetime(2025, 5, 1, tzinfo=dt.timezone.utc)

    def test_invalid_code_rejects_subscribe_without_processor_call(self, orchestrator, processor):
        result = orchestrator.subscribe(1, PlanType.MONTHLY, discount_code="bogus")
        assert result.success is False
        assert result.code == "SUB007"
        assert processor.count("create_subscription") == 0
