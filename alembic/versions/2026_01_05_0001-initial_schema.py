"""Initial schema: companies, profiles, points ledgers, rewards and billing audit.

Revision ID: 2026_01_05_0001
Revises:
Create Date: 2026-01-05

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_01_05_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
    )


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )


def _company_fk(ondelete: str = "CASCADE") -> sa.Column:
    return sa.Column(
        "company_id",
        UUID(as_uuid=True),
        sa.ForeignKey("companies.id", ondelete=ondelete),
        nullable=False,
    )


def upgrade() -> None:
    """Create the Grattia schema."""
    # ========================================================================
    # Tenants and members
    # ========================================================================
    op.create_table(
        "companies",
        _id_column(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("handle", sa.String(100), nullable=True, unique=True),
        sa.Column("environment", sa.String(10), nullable=False, server_default="live"),
        sa.Column("stripe_customer_id_test", sa.String(255), nullable=True),
        sa.Column("stripe_customer_id_live", sa.String(255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=True),
        sa.Column("subscription_status", sa.String(20), nullable=False, server_default="inactive"),
        sa.Column("billing_cycle_anchor", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_ready", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("points_balance", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("team_member_monthly_limit", sa.Integer, nullable=False, server_default="100"),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint("points_balance >= 0", name="ck_company_points_non_negative"),
        sa.CheckConstraint(
            "team_member_monthly_limit >= 0", name="ck_company_monthly_limit_non_negative"
        ),
        sa.CheckConstraint("environment IN ('test', 'live')", name="ck_company_environment"),
    )
    op.create_index(
        "idx_companies_subscription",
        "companies",
        ["stripe_subscription_id"],
        postgresql_where=sa.text("stripe_subscription_id IS NOT NULL"),
    )

    op.create_table(
        "profiles",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True, unique=True),
        _company_fk(),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("first_name", sa.String(100), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(100), nullable=False, server_default=""),
        sa.Column("department", sa.String(100), nullable=True),
        sa.Column("points", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("is_admin", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_platform_admin", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(20), nullable=False, server_default="invited"),
        sa.Column("first_login_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint("points >= 0", name="ck_profile_points_non_negative"),
        sa.CheckConstraint(
            "status IN ('invited', 'active', 'deactivated')", name="ck_profile_status"
        ),
    )
    op.create_index("ix_profiles_company_id", "profiles", ["company_id"])
    op.create_index("idx_profiles_company_status", "profiles", ["company_id", "status"])

    # ========================================================================
    # Points ledgers
    # ========================================================================
    op.create_table(
        "point_transactions",
        _id_column(),
        _company_fk(),
        sa.Column(
            "sender_profile_id",
            UUID(as_uuid=True),
            sa.ForeignKey("profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "recipient_profile_id",
            UUID(as_uuid=True),
            sa.ForeignKey("profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("points", sa.BigInteger, nullable=False),
        sa.Column("transaction_type", sa.String(30), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("created_by", UUID(as_uuid=True), nullable=True),
        _created_at(),
        sa.CheckConstraint("points > 0", name="ck_point_transaction_points_positive"),
        sa.CheckConstraint(
            "sender_profile_id IS NULL OR recipient_profile_id IS NULL "
            "OR sender_profile_id <> recipient_profile_id",
            name="ck_point_transaction_not_self",
        ),
    )
    op.create_index("ix_point_transactions_company_id", "point_transactions", ["company_id"])
    op.create_index(
        "idx_point_transactions_sender", "point_transactions", ["sender_profile_id", "created_at"]
    )
    op.create_index(
        "idx_point_transactions_recipient",
        "point_transactions",
        ["recipient_profile_id", "created_at"],
    )

    op.create_table(
        "company_point_transactions",
        _id_column(),
        _company_fk(),
        sa.Column("amount", sa.BigInteger, nullable=False),
        sa.Column("transaction_type", sa.String(30), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("created_by", UUID(as_uuid=True), nullable=True),
        sa.Column("stripe_session_id", sa.String(255), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
        sa.Column("stripe_fee", sa.BigInteger, nullable=True),
        sa.Column("total_amount", sa.BigInteger, nullable=True),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="completed"),
        _created_at(),
        sa.CheckConstraint("amount > 0", name="ck_company_transaction_amount_positive"),
    )
    op.create_index(
        "ix_company_point_transactions_company_id", "company_point_transactions", ["company_id"]
    )
    # One credit per Stripe checkout session
    op.create_index(
        "uq_company_transactions_stripe_session",
        "company_point_transactions",
        ["stripe_session_id"],
        unique=True,
        postgresql_where=sa.text("stripe_session_id IS NOT NULL"),
    )

    op.create_table(
        "monthly_points_allocations",
        _id_column(),
        _company_fk(),
        sa.Column(
            "profile_id",
            UUID(as_uuid=True),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("allocation_month", sa.Date, nullable=False),
        sa.Column("points_allocated", sa.Integer, nullable=False),
        sa.Column(
            "allocation_date",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint("points_allocated >= 0", name="ck_allocation_points_non_negative"),
        sa.UniqueConstraint(
            "company_id", "profile_id", "allocation_month", name="uq_monthly_allocation"
        ),
    )
    op.create_index(
        "idx_allocations_company_month",
        "monthly_points_allocations",
        ["company_id", "allocation_month"],
    )

    # Company-level marker; present even when no member was allocated
    op.create_table(
        "monthly_allocation_runs",
        _id_column(),
        _company_fk(),
        sa.Column("allocation_month", sa.Date, nullable=False),
        sa.Column("member_count", sa.Integer, nullable=False),
        sa.Column("points_per_member", sa.Integer, nullable=False),
        sa.Column(
            "completed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint("member_count >= 0", name="ck_allocation_run_members_non_negative"),
        sa.UniqueConstraint(
            "company_id", "allocation_month", name="uq_monthly_allocation_run"
        ),
    )

    # ========================================================================
    # Rewards and redemptions
    # ========================================================================
    op.create_table(
        "rewards",
        _id_column(),
        sa.Column(
            "company_id",
            UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("points_cost", sa.Integer, nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("product_url", sa.String(2048), nullable=True),
        sa.Column("image_url", sa.String(2048), nullable=True),
        sa.Column("brand_name", sa.String(255), nullable=True),
        sa.Column("price_minor", sa.BigInteger, nullable=False),
        sa.Column("multiplier", sa.Numeric(10, 4), nullable=False),
        sa.Column("stock", sa.Integer, nullable=True),
        sa.Column("created_by", UUID(as_uuid=True), nullable=True),
        _created_at(),
        sa.CheckConstraint("points_cost > 0", name="ck_reward_points_cost_positive"),
        sa.CheckConstraint("stock IS NULL OR stock >= 0", name="ck_reward_stock_non_negative"),
        sa.UniqueConstraint(
            "company_id",
            "source",
            "external_id",
            name="uq_reward_external",
            postgresql_nulls_not_distinct=True,
        ),
    )
    op.create_index("ix_rewards_company_id", "rewards", ["company_id"])

    op.create_table(
        "redemptions",
        _id_column(),
        sa.Column(
            "profile_id",
            UUID(as_uuid=True),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "reward_id",
            UUID(as_uuid=True),
            sa.ForeignKey("rewards.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False),
        sa.Column("points_spent", sa.Integer, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("external_order_id", sa.String(255), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint("points_spent > 0", name="ck_redemption_points_positive"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'shipped', 'delivered', 'cancelled')",
            name="ck_redemption_status",
        ),
    )
    op.create_index("ix_redemptions_profile_id", "redemptions", ["profile_id"])
    op.create_index("ix_redemptions_company_id", "redemptions", ["company_id"])

    # ========================================================================
    # Billing audit and platform settings
    # ========================================================================
    op.create_table(
        "subscription_events",
        _id_column(),
        _company_fk(),
        sa.Column("event_type", sa.String(30), nullable=False),
        sa.Column("previous_quantity", sa.Integer, nullable=True),
        sa.Column("new_quantity", sa.Integer, nullable=True),
        sa.Column("amount_charged", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=True),
        sa.Column("stripe_invoice_id", sa.String(255), nullable=True),
        sa.Column("stripe_session_id", sa.String(255), nullable=True),
        sa.Column("details", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        _created_at(),
    )
    op.create_index("ix_subscription_events_company_id", "subscription_events", ["company_id"])
    op.create_index(
        "uq_subscription_events_session",
        "subscription_events",
        ["stripe_session_id"],
        unique=True,
        postgresql_where=sa.text("stripe_session_id IS NOT NULL"),
    )

    op.create_table(
        "platform_settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value", sa.String(255), nullable=False),
        _updated_at(),
    )
    op.execute(
        "INSERT INTO platform_settings (key, value) VALUES ('point_exchange_rate', '0.01')"
    )


def downgrade() -> None:
    """Drop the Grattia schema."""
    op.drop_table("platform_settings")
    op.drop_table("subscription_events")
    op.drop_table("redemptions")
    op.drop_table("rewards")
    op.drop_table("monthly_allocation_runs")
    op.drop_table("monthly_points_allocations")
    op.drop_table("company_point_transactions")
    op.drop_table("point_transactions")
    op.drop_table("profiles")
    op.drop_table("companies")
