"""subscription lifecycle tables

Revision ID: 0001_subscription_lifecycle
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

import datetime as dt

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_subscription_lifecycle"
down_revision = None
branch_labels = None
depends_on = None

SEEDED_AT = dt.datetime(2026, 10, 19, tzinfo=dt.timezone.utc)

PLAN_TYPE = sa.Enum("FREE", "MONTHLY", "YEARLY", name="plantype", native_enum=False, length=20)
STATUS = sa.Enum(
    "NONE", "PENDING", "ACTIVE", "PAYMENT_FAILED", "SUSPENDED", "CANCELLED", "EXPIRED",
    name="subscriptionstatus", native_enum=False, length=20,
)


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:  # noqa: D401
    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("plan_type", PLAN_TYPE, nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("price_usd", sa.Numeric(10, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("features", sa.JSON(), nullable=True),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("plan_type", name="uq_subscription_plans_plan_type"),
    )
    op.bulk_insert(
        sa.table(
            "subscription_plans",
            sa.column("plan_type", sa.String),
            sa.column("name", sa.String),
            sa.column("price_usd", sa.Numeric),
            sa.column("is_active", sa.Boolean),
            sa.column("created_at", sa.DateTime(timezone=True)),
        ),
        [
            {"plan_type": "MONTHLY", "name": "GatoFit Premium Monthly", "price_usd": 4.99, "is_active": True, "created_at": SEEDED_AT},
            {"plan_type": "YEARLY", "name": "GatoFit Premium Yearly", "price_usd": 39.99, "is_active": True, "created_at": SEEDED_AT},
        ],
    )

    op.create_table(
        "discount_codes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=50), nullable=False),
        sa.Column(
            "discount_type",
            sa.Enum("PERCENTAGE", "FIXED", "MONTHS_FREE", name="discounttype", native_enum=False, length=20),
            nullable=False,
        ),
        sa.Column("percentage_off", sa.Numeric(5, 2), nullable=True),
        sa.Column("amount_off_usd", sa.Numeric(10, 2), nullable=True),
        sa.Column("duration_months", sa.Integer(), nullable=True),
        sa.Column(
            "application_type",
            sa.Enum("FIRST_BILLING_ONLY", "FOREVER", name="applicationtype", native_enum=False, length=20),
            nullable=False,
        ),
        sa.Column("applicable_plans", sa.JSON(), nullable=True),
        _ts("valid_from"),
        _ts("valid_to"),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("current_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "usage_type",
            sa.Enum("SINGLE_USE", "MULTI_USE", name="usagetype", native_enum=False, length=20),
            nullable=False,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("code", name="uq_discount_codes_code"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("plan_type", PLAN_TYPE, nullable=False),
        sa.Column("status", STATUS, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("remote_subscription_id", sa.String(length=64), nullable=True),
        _ts("started_at"),
        _ts("expires_at"),
        sa.Column("auto_renewal", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("next_plan_type", PLAN_TYPE, nullable=True),
        _ts("next_plan_starts_at"),
        _ts("scheduled_change_created_at"),
        _ts("suspended_at"),
        _ts("cancelled_at"),
        sa.Column("payer_id", sa.String(length=64), nullable=True),
        sa.Column("payer_email", sa.String(length=255), nullable=True),
        sa.Column(
            "discount_code_id",
            sa.Integer(),
            sa.ForeignKey("discount_codes.id", name="fk_subscriptions_discount_code_id_discount_codes"),
            nullable=True,
        ),
        sa.Column("bonus_months_applied", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.UniqueConstraint("user_id", name="uq_subscriptions_user_id"),
        sa.CheckConstraint(
            "(next_plan_type IS NULL AND next_plan_starts_at IS NULL) OR "
            "(next_plan_type IS NOT NULL AND next_plan_starts_at IS NOT NULL)",
            name="ck_subscriptions_next_plan_pair",
        ),
    )
    op.create_index("ix_subscriptions_remote_subscription_id", "subscriptions", ["remote_subscription_id"])
    op.create_index("ix_subscriptions_expires_at", "subscriptions", ["expires_at"])
    op.create_index("ix_subscriptions_next_plan_starts_at", "subscriptions", ["next_plan_starts_at"])
    op.create_index("ix_subscriptions_status_expires_at", "subscriptions", ["status", "expires_at"])

    op.create_table(
        "subscription_payment_failures",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("remote_subscription_id", sa.String(length=64), nullable=True),
        _ts("detected_at", nullable=False),
        _ts("grace_period_ends_at", nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("last_retry_at"),
        _ts("resolved_at"),
        sa.Column("resolution", sa.String(length=20), nullable=True),
        # 1 while unresolved, NULL once resolved: at most one open row per user
        sa.Column("open_marker", sa.Integer(), nullable=True),
        sa.UniqueConstraint("user_id", "open_marker", name="uq_payment_failures_user_open"),
    )
    op.create_index("ix_subscription_payment_failures_user_id", "subscription_payment_failures", ["user_id"])
    op.create_index(
        "ix_payment_failures_open_deadline",
        "subscription_payment_failures",
        ["open_marker", "grace_period_ends_at"],
    )

    op.create_table(
        "subscription_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=40), nullable=False),
        sa.Column("from_status", sa.String(length=20), nullable=False),
        sa.Column("to_status", sa.String(length=20), nullable=False),
        sa.Column("plan_before", sa.String(length=20), nullable=True),
        sa.Column("plan_after", sa.String(length=20), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_subscription_events_user_id", "subscription_events", ["user_id"])

    op.create_table(
        "discount_redemptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "discount_code_id",
            sa.Integer(),
            sa.ForeignKey("discount_codes.id", name="fk_discount_redemptions_discount_code_id_discount_codes"),
            nullable=False,
        ),
        sa.Column("remote_subscription_id", sa.String(length=64), nullable=True),
        _ts("redeemed_at", nullable=False),
        sa.UniqueConstraint("user_id", "discount_code_id", name="uq_discount_redemptions_user_code"),
    )
    op.create_index("ix_discount_redemptions_user_id", "discount_redemptions", ["user_id"])

    op.create_table(
        "processor_webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("external_id", sa.String(length=120), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("resource_id", sa.String(length=64), nullable=True),
        sa.Column("outcome", sa.String(length=40), nullable=True),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint(
            "provider", "external_id", name="uq_processor_webhook_events_provider_external_id"
        ),
    )


def downgrade() -> None:  # noqa: D401
    op.drop_table("processor_webhook_events")
    op.drop_index("ix_discount_redemptions_user_id", table_name="discount_redemptions")
    op.drop_table("discount_redemptions")
    op.drop_index("ix_subscription_events_user_id", table_name="subscription_events")
    op.drop_table("subscription_events")
    op.drop_index("ix_payment_failures_open_deadline", table_name="subscription_payment_failures")
    op.drop_index("ix_subscription_payment_failures_user_id", table_name="subscription_payment_failures")
    op.drop_table("subscription_payment_failures")
    op.drop_index("ix_subscriptions_status_expires_at", table_name="subscriptions")
    op.drop_index("ix_subscriptions_next_plan_starts_at", table_name="subscriptions")
    op.drop_index("ix_subscriptions_expires_at", table_name="subscriptions")
    op.drop_index("ix_subscriptions_remote_subscription_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("discount_codes")
    op.drop_table("subscription_plans")
