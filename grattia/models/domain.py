"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from grattia.models.api import MemberStatus, PointsOperation, RewardSource


@dataclass(frozen=True)
class AuthContext:
    """Authenticated caller, resolved once per request and passed explicitly."""

    user_id: UUID
    profile_id: UUID
    company_id: UUID
    email: str
    is_admin: bool
    is_platform_admin: bool
    status: MemberStatus

    @property
    def is_active(self) -> bool:
        return self.status != MemberStatus.DEACTIVATED


@dataclass(frozen=True)
class PointsAdjustmentIntent:
    """Platform admin request to grant or remove points - immutable intent."""

    company_id: UUID
    amount: int
    operation: PointsOperation
    description: str
    member_id: UUID | None = None

    def __post_init__(self) -> None:
        """Validate adjustment constraints."""
        if self.amount <= 0:
            raise ValueError(f"Amount must be positive: {self.amount}")
        if not self.description:
            raise ValueError("Description cannot be empty")

    @property
    def signed_amount(self) -> int:
        """Amount with the sign of the operation applied."""
        return self.amount if self.operation == PointsOperation.GRANT else -self.amount


@dataclass(frozen=True)
class BalanceChange:
    """Immutable before/after snapshot of a balance mutation."""

    previous: int
    new: int

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if self.previous < 0 or self.new < 0:
            raise ValueError(f"Balance cannot be negative: {self.previous} -> {self.new}")

    @property
    def delta(self) -> int:
        return self.new - self.previous


@dataclass(frozen=True)
class MonthlyBudget:
    """A member's giving allowance for one calendar month."""

    allocation_month: date
    allocated: int
    spent: int

    @property
    def remaining(self) -> int:
        return max(0, self.allocated - self.spent)


@dataclass(frozen=True)
class CatalogProduct:
    """Product fetched from an external catalog, normalised across providers."""

    source: RewardSource
    external_id: str
    name: str
    description: str | None
    price: Decimal  # major units (dollars)
    currency: str
    image_url: str | None
    product_url: str | None
    brand_name: str | None
    is_gift_card: bool = False

    def __post_init__(self) -> None:
        """Validate product constraints."""
        if not self.external_id:
            raise ValueError("external_id cannot be empty")
        if self.price <= 0:
            raise ValueError(f"Product price must be positive: {self.price}")

    @property
    def price_minor(self) -> int:
        return int((self.price * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Subscription state as reported by Stripe."""

    subscription_id: str
    status: str
    quantity: int
    item_id: str | None
    current_period_end: datetime | None


@dataclass(frozen=True)
class CheckoutSessionInfo:
    """Checkout session state as reported by Stripe."""

    session_id: str
    mode: str
    payment_status: str
    status: str | None
    subscription_id: str | None
    customer_id: str | None
    amount_total: int
    metadata: tuple[tuple[str, str], ...]

    def metadata_value(self, key: str) -> str | None:
        for k, v in self.metadata:
            if k == key:
                return v
        return None

