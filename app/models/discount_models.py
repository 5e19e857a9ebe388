"""Discount code models."""
from __future__ import annotations

import datetime as dt
import enum
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, Boolean, Enum, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base_class import Base
from app.db.types import UTCDateTime
from app.models.subscription_models import utcnow


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"     # percentage_off applied to the processor price
    FIXED = "fixed"               # amount_off_usd subtracted from the processor price
    MONTHS_FREE = "months_free"   # full price, duration_months added on activation


class ApplicationType(str, enum.Enum):
    FIRST_BILLING_ONLY = "first_billing_only"
    FOREVER = "forever"


class UsageType(str, enum.Enum):
    SINGLE_USE = "single_use"   # once per user
    MULTI_USE = "multi_use"


class DiscountCode(Base):
    __tablename__ = "discount_codes"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    """Stored lower-case; lookups are case-insensitive"""

    discount_type: Mapped[DiscountType] = mapped_column(
        Enum(DiscountType, native_enum=False, length=20), nullable=False
    )
    percentage_off: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    amount_off_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    duration_months: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    application_type: Mapped[ApplicationType] = mapped_column(
        Enum(ApplicationType, native_enum=False, length=20),
        default=ApplicationType.FIRST_BILLING_ONLY,
        nullable=False,
    )
    applicable_plans: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    """e.g. ["monthly"], ["yearly"], ["both"]; NULL means every paid plan"""

    valid_from: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime(), nullable=True)
    valid_to: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime(), nullable=True)
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_type: Mapped[UsageType] = mapped_column(
        Enum(UsageType, native_enum=False, length=20), default=UsageType.SINGLE_USE, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    def applies_to(self, plan: str) -> bool:
        if not self.applicable_plans:
            return True
        return plan in self.applicable_plans or "both" in self.applicable_plans


class DiscountRedemption(Base):
    """A user's use of a discount code, recorded after activation succeeds."""
    __tablename__ = "discount_redemptions"
    __table_args__ = (
        UniqueConstraint("user_id", "discount_code_id", name="uq_discount_redemptions_user_code"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    discount_code_id: Mapped[int] = mapped_column(ForeignKey("discount_codes.id"), nullable=False)
    remote_subscription_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    redeemed_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
