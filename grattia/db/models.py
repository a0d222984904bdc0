"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Company(Base):
    """
    ORM model for companies table.

    A tenant: owns its profiles, rewards, points balance and Stripe subscription.
    """

    __tablename__ = "companies"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    handle: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)

    # Billing environment selects the Stripe key pair and customer column
    environment: Mapped[str] = mapped_column(String(10), nullable=False, default="live")
    stripe_customer_id_test: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_customer_id_live: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="inactive"
    )
    billing_cycle_anchor: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Card on file via a setup-mode checkout; subscription starts on first member login
    billing_ready: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Points
    points_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    team_member_monthly_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=100)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("points_balance >= 0", name="ck_company_points_non_negative"),
        CheckConstraint(
            "team_member_monthly_limit >= 0", name="ck_company_monthly_limit_non_negative"
        ),
        CheckConstraint("environment IN ('test', 'live')", name="ck_company_environment"),
        Index(
            "idx_companies_subscription",
            "stripe_subscription_id",
            postgresql_where=(stripe_subscription_id.isnot(None)),
        ),
    )

    def stripe_customer_id(self) -> str | None:
        """Customer id for the company's current environment."""
        if self.environment == "test":
            return self.stripe_customer_id_test
        return self.stripe_customer_id_live

    def set_stripe_customer_id(self, customer_id: str) -> None:
        if self.environment == "test":
            self.stripe_customer_id_test = customer_id
        else:
            self.stripe_customer_id_live = customer_id

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Company(id={self.id}, name={self.name}, env={self.environment}, "
            f"points_balance={self.points_balance})>"
        )


class Profile(Base):
    """
    ORM model for profiles table.

    A user's membership in a company, including their redeemable point balance.
    """

    __tablename__ = "profiles"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    # Subject of the identity provider's token; unset until first login
    user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True, unique=True)
    company_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)

    points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_platform_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="invited")
    first_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("points >= 0", name="ck_profile_points_non_negative"),
        CheckConstraint(
            "status IN ('invited', 'active', 'deactivated')", name="ck_profile_status"
        ),
        Index("idx_profiles_company_status", "company_id", "status"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Profile(id={self.id}, company_id={self.company_id}, "
            f"status={self.status}, points={self.points})>"
        )


class PointTransaction(Base):
    """
    ORM model for point_transactions table.

    Append-only member ledger. A null sender means the points came from the
    platform or the company; a null recipient means they went back to the company.
    """

    __tablename__ = "point_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sender_profile_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True
    )
    recipient_profile_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True
    )

    points: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("points > 0", name="ck_point_transaction_points_positive"),
        CheckConstraint(
            "sender_profile_id IS NULL OR recipient_profile_id IS NULL "
            "OR sender_profile_id <> recipient_profile_id",
            name="ck_point_transaction_not_self",
        ),
        Index("idx_point_transactions_sender", "sender_profile_id", "created_at"),
        Index("idx_point_transactions_recipient", "recipient_profile_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PointTransaction(id={self.id}, type={self.transaction_type}, "
            f"points={self.points})>"
        )


class CompanyPointTransaction(Base):
    """
    ORM model for company_point_transactions table.

    Append-only ledger of changes to a company's points balance.
    """

    __tablename__ = "company_point_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)

    # Stripe purchase details (points bought with money)
    stripe_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_fee: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    total_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_company_transaction_amount_positive"),
        Index(
            "uq_company_transactions_stripe_session",
            "stripe_session_id",
            unique=True,
            postgresql_where=(stripe_session_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CompanyPointTransaction(id={self.id}, type={self.transaction_type}, "
            f"amount={self.amount})>"
        )


class MonthlyPointsAllocation(Base):
    """
    ORM model for monthly_points_allocations table.

    One row per member per month; the unique constraint makes allocation idempotent.
    """

    __tablename__ = "monthly_points_allocations"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
    )
    profile_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
    )
    allocation_month: Mapped[date] = mapped_column(Date, nullable=False)
    points_allocated: Mapped[int] = mapped_column(Integer, nullable=False)
    allocation_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("points_allocated >= 0", name="ck_allocation_points_non_negative"),
        UniqueConstraint(
            "company_id", "profile_id", "allocation_month", name="uq_monthly_allocation"
        ),
        Index("idx_allocations_company_month", "company_id", "allocation_month"),
    )


class MonthlyAllocationRun(Base):
    """
    ORM model for monthly_allocation_runs table.

    One row per company per month, written with the member allocations. Marks
    the month as allocated even when the company had no active members.
    """

    __tablename__ = "monthly_allocation_runs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
    )
    allocation_month: Mapped[date] = mapped_column(Date, nullable=False)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False)
    points_per_member: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("member_count >= 0", name="ck_allocation_run_members_non_negative"),
        UniqueConstraint("company_id", "allocation_month", name="uq_monthly_allocation_run"),
    )


class Reward(Base):
    """
    ORM model for rewards table.

    points_cost is fixed when the product is imported and never recalculated.
    """

    __tablename__ = "rewards"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    # NULL for global rewards visible to every company
    company_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    points_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    brand_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    multiplier: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    # NULL means unlimited
    stock: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_by: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("points_cost > 0", name="ck_reward_points_cost_positive"),
        CheckConstraint("stock IS NULL OR stock >= 0", name="ck_reward_stock_non_negative"),
        UniqueConstraint(
            "company_id",
            "source",
            "external_id",
            name="uq_reward_external",
            postgresql_nulls_not_distinct=True,
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Reward(id={self.id}, name={self.name}, points_cost={self.points_cost})>"


class Redemption(Base):
    """ORM model for redemptions table."""

    __tablename__ = "redemptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    profile_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    reward_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("rewards.id", ondelete="RESTRICT"),
        nullable=False,
    )
    company_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)

    points_spent: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    external_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("points_spent > 0", name="ck_redemption_points_positive"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'shipped', 'delivered', 'cancelled')",
            name="ck_redemption_status",
        ),
    )


class SubscriptionEvent(Base):
    """
    ORM model for subscription_events table.

    Append-only audit trail of every billing state change.
    """

    __tablename__ = "subscription_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    previous_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    new_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount_charged: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    details: Mapped[dict[str, str]] = mapped_column(JSONB, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index(
            "uq_subscription_events_session",
            "stripe_session_id",
            unique=True,
            postgresql_where=(stripe_session_id.isnot(None)),
        ),
    )


class PlatformSetting(Base):
    """ORM model for platform_settings key/value table."""

    __tablename__ = "platform_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
