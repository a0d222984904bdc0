"""
Payment Provider Protocol - Provider-agnostic billing interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Protocol

from grattia.models.domain import CheckoutSessionInfo, SubscriptionSnapshot


@dataclass(frozen=True)
class CheckoutLineItem:
    """A single priced line in a checkout session."""

    name: str
    unit_amount_minor: int
    quantity: int
    currency: str
    recurring_monthly: bool = False
    description: str | None = None

    def __post_init__(self) -> None:
        """Validate line item constraints."""
        if self.unit_amount_minor <= 0:
            raise ValueError(f"Unit amount must be positive: {self.unit_amount_minor}")
        if self.quantity <= 0:
            raise ValueError(f"Quantity must be positive: {self.quantity}")


@dataclass(frozen=True)
class CheckoutRequest:
    """
    Provider-agnostic checkout session request.

    ``mode`` follows Stripe: setup collects a card, subscription starts
    recurring billing, payment is a one-off charge.
    """

    mode: Literal["setup", "subscription", "payment"]
    customer_id: str
    success_url: str
    cancel_url: str
    metadata: tuple[tuple[str, str], ...]
    line_items: tuple[CheckoutLineItem, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        """Validate mode-dependent constraints."""
        if self.mode == "setup" and self.line_items:
            raise ValueError("Setup sessions cannot carry line items")
        if self.mode != "setup" and not self.line_items:
            raise ValueError(f"{self.mode} sessions require at least one line item")


@dataclass(frozen=True)
class CheckoutResult:
    """Created checkout session."""

    session_id: str
    url: str


@dataclass(frozen=True)
class QuantityUpdateResult:
    """Outcome of changing a subscription's seat quantity."""

    subscription_id: str
    quantity: int
    invoice_id: str | None
    amount_paid_minor: int


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Every method takes the secret key explicitly so one process can serve
    companies in both test and live environments.
    """

    async def create_customer(
        self, api_key: str, email: str, name: str, metadata: tuple[tuple[str, str], ...]
    ) -> str:
        """Create a customer and return its provider id."""
        ...

    async def create_checkout_session(
        self, api_key: str, request: CheckoutRequest
    ) -> CheckoutResult:
        """Create a hosted checkout session."""
        ...

    async def get_checkout_session(self, api_key: str, session_id: str) -> CheckoutSessionInfo:
        """Retrieve checkout session status."""
        ...

    async def create_subscription(
        self,
        api_key: str,
        customer_id: str,
        item: CheckoutLineItem,
        billing_cycle_anchor: datetime,
        metadata: tuple[tuple[str, str], ...],
    ) -> SubscriptionSnapshot:
        """Start a recurring subscription against a saved payment method."""
        ...

    async def get_subscription(self, api_key: str, subscription_id: str) -> SubscriptionSnapshot:
        """Retrieve subscription state."""
        ...

    async def update_subscription_quantity(
        self, api_key: str, subscription: SubscriptionSnapshot, quantity: int
    ) -> QuantityUpdateResult:
        """Change seat quantity, invoicing the proration immediately."""
        ...

    async def cancel_subscription(self, api_key: str, subscription_id: str) -> None:
        """Cancel a subscription immediately."""
        ...

    async def create_portal_session(self, api_key: str, customer_id: str, return_url: str) -> str:
        """Create a billing portal session and return its URL."""
        ...
