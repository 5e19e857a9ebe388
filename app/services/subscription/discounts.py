"""Discount code validation, pricing and redemption."""
from __future__ import annotations

import datetime as dt
import logging
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.exceptions import DiscountCodeError
from app.models.discount_models import (
    ApplicationType,
    DiscountCode,
    DiscountRedemption,
    DiscountType,
    UsageType,
)
from app.models.subscription_models import PlanType, SubscriptionPlan
from app.services.processor.types import PlanSpec

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


class DiscountService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, discount_code_id: int | None) -> DiscountCode | None:
        if discount_code_id is None:
            return None
        return self.db.get(DiscountCode, discount_code_id)

    def validate(self, raw_code: str, plan: PlanType, user_id: int, now: dt.datetime) -> DiscountCode:
        code_value = raw_code.strip().lower()
        discount = self.db.execute(
            select(DiscountCode).where(func.lower(DiscountCode.code) == code_value)
        ).scalar_one_or_none()
        if discount is None or not discount.is_active:
            raise DiscountCodeError("Invalid discount code.", code_value)
        if not discount.applies_to(plan.value):
            raise DiscountCodeError("This discount code is not valid for the selected plan.", code_value)
        if discount.valid_from and discount.valid_from > now:
            raise DiscountCodeError("This discount code is not available yet.", code_value)
        if discount.valid_to and discount.valid_to < now:
            raise DiscountCodeError("This discount code has expired.", code_value)
        if discount.max_uses is not None and discount.current_uses >= discount.max_uses:
            raise DiscountCodeError("This discount code has been fully redeemed.", code_value)
        if discount.usage_type is UsageType.SINGLE_USE and self._already_redeemed(user_id, discount.id):
            raise DiscountCodeError("You have already used this discount code.", code_value)
        return discount

    def _already_redeemed(self, user_id: int, discount_code_id: int) -> bool:
        return self.db.execute(
            select(DiscountRedemption.id).where(
                DiscountRedemption.user_id == user_id,
                DiscountRedemption.discount_code_id == discount_code_id,
            )
        ).first() is not None

    @staticmethod
    def discounted_price(price: Decimal, discount: DiscountCode) -> Decimal:
        if discount.discount_type is DiscountType.PERCENTAGE and discount.percentage_off:
            reduced = price * (Decimal(100) - Decimal(discount.percentage_off)) / Decimal(100)
        elif discount.discount_type is DiscountType.FIXED and discount.amount_off_usd:
            reduced = price - Decimal(discount.amount_off_usd)
        else:
            reduced = price
        return max(reduced, Decimal("0")).quantize(_CENT, rounding=ROUND_HALF_UP)

    def plan_spec(self, plan: SubscriptionPlan, discount: DiscountCode | None = None) -> PlanSpec:
        """Price a processor plan. Free months never change the processor price."""
        price = Decimal(plan.price_usd).quantize(_CENT)
        if discount is None or discount.discount_type is DiscountType.MONTHS_FREE:
            return PlanSpec(plan_type=plan.plan_type, price_usd=price, display_name=plan.name)
        reduced = self.discounted_price(price, discount)
        if discount.application_type is ApplicationType.FIRST_BILLING_ONLY:
            return PlanSpec(
                plan_type=plan.plan_type,
                price_usd=price,
                display_name=f"{plan.name} (discounted)",
                first_cycle_price_usd=reduced,
            )
        return PlanSpec(plan_type=plan.plan_type, price_usd=reduced, display_name=f"{plan.name} (discounted)")

    @staticmethod
    def bonus_months(discount: DiscountCode | None) -> int:
        if discount is None or discount.discount_type is not DiscountType.MONTHS_FREE:
            return 0
        return discount.duration_months or 0

    @staticmethod
    def carries_over(discount: DiscountCode | None, plan: PlanType) -> bool:
        """Whether the discount keeps applying when the subscriber moves to ``plan``."""
        return (
            discount is not None
            and discount.discount_type is not DiscountType.MONTHS_FREE
            and discount.application_type is ApplicationType.FOREVER
            and discount.applies_to(plan.value)
        )

    def redeem(self, *, user_id: int, discount_code_id: int, remote_subscription_id: str | None, now: dt.datetime) -> bool:
        """Record a redemption once per user and code. Returns False if already recorded."""
        if self._already_redeemed(user_id, discount_code_id):
            return False
        self.db.add(
            DiscountRedemption(
                user_id=user_id,
                discount_code_id=discount_code_id,
                remote_subscription_id=remote_subscription_id,
                redeemed_at=now,
            )
        )
        self.db.execute(
            update(DiscountCode)
            .where(DiscountCode.id == discount_code_id)
            .values(current_uses=DiscountCode.current_uses + 1)
            .execution_options(synchronize_session=False)
        )
        logger.info("Discount code %s redeemed by user %s", discount_code_id, user_id)
        return True
