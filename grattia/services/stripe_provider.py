"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

from datetime import UTC, datetime
from typing import Any

import stripe
from structlog import get_logger

from grattia.exceptions import PaymentProviderError
from grattia.models.domain import CheckoutSessionInfo, SubscriptionSnapshot
from grattia.observability.metrics import metrics
from grattia.services.payment_provider import (
    CheckoutLineItem,
    CheckoutRequest,
    CheckoutResult,
    QuantityUpdateResult,
)

logger = get_logger(__name__)


def _require_key(api_key: str) -> str:
    if not api_key:
        raise PaymentProviderError("Stripe secret key is not configured for this environment")
    return api_key


def _timestamp_to_datetime(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def _price_data(item: CheckoutLineItem) -> dict[str, Any]:
    product_data: dict[str, Any] = {"name": item.name}
    if item.description:
        product_data["description"] = item.description
    price_data: dict[str, Any] = {
        "currency": item.currency.lower(),
        "unit_amount": item.unit_amount_minor,
        "product_data": product_data,
    }
    if item.recurring_monthly:
        price_data["recurring"] = {"interval": "month"}
    return price_data


def _to_subscription_snapshot(subscription: Any) -> SubscriptionSnapshot:
    # "items" collides with dict.items on StripeObject, so index explicitly
    items = subscription["items"]["data"] if subscription.get("items") else []
    first_item = items[0] if items else None
    period_end = subscription.get("current_period_end")
    if period_end is None and first_item is not None:
        period_end = first_item.get("current_period_end")
    return SubscriptionSnapshot(
        subscription_id=subscription.id,
        status=subscription.status,
        quantity=int(first_item.get("quantity") or 0) if first_item is not None else 0,
        item_id=first_item.id if first_item is not None else None,
        current_period_end=_timestamp_to_datetime(period_end),
    )


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe. Keys are passed per
    call so test and live companies can be served by the same instance.
    """

    async def create_customer(
        self, api_key: str, email: str, name: str, metadata: tuple[tuple[str, str], ...]
    ) -> str:
        """
        Create a Stripe customer.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info("creating_stripe_customer", customer_name=name)

            customer = stripe.Customer.create(
                api_key=_require_key(api_key),
                email=email,
                name=name,
                metadata=dict(metadata),
            )

            logger.info("stripe_customer_created", customer_id=customer.id)
            metrics.record_stripe_call("create_customer", True)
            return customer.id

        except stripe.StripeError as exc:
            metrics.record_stripe_call("create_customer", False)
            logger.error(
                "stripe_customer_create_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to create customer: {exc}") from exc

    async def create_checkout_session(
        self, api_key: str, request: CheckoutRequest
    ) -> CheckoutResult:
        """
        Create a Stripe Checkout session.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        params: dict[str, Any] = {
            "mode": request.mode,
            "customer": request.customer_id,
            "payment_method_types": ["card"],
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
            "metadata": dict(request.metadata),
        }
        if request.line_items:
            params["line_items"] = [
                {"price_data": _price_data(item), "quantity": item.quantity}
                for item in request.line_items
            ]
        if request.mode == "setup":
            params["setup_intent_data"] = {
                "usage": "off_session",
                "metadata": dict(request.metadata),
            }
        elif request.mode == "subscription":
            params["subscription_data"] = {"metadata": dict(request.metadata)}

        try:
            logger.info(
                "creating_stripe_checkout_session",
                mode=request.mode,
                customer_id=request.customer_id,
            )

            session = stripe.checkout.Session.create(api_key=_require_key(api_key), **params)

            logger.info("stripe_checkout_session_created", session_id=session.id, mode=request.mode)
            metrics.record_stripe_call("create_checkout_session", True)
            return CheckoutResult(session_id=session.id, url=session.url or "")

        except stripe.StripeError as exc:
            metrics.record_stripe_call("create_checkout_session", False)
            logger.error(
                "stripe_checkout_session_failed",
                mode=request.mode,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to create checkout session: {exc}") from exc

    async def get_checkout_session(self, api_key: str, session_id: str) -> CheckoutSessionInfo:
        """
        Retrieve a Checkout session.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info("getting_stripe_checkout_session", session_id=session_id)

            session = stripe.checkout.Session.retrieve(session_id, api_key=_require_key(api_key))
            metadata = session.get("metadata") or {}

            metrics.record_stripe_call("get_checkout_session", True)
            return CheckoutSessionInfo(
                session_id=session.id,
                mode=session.mode,
                payment_status=session.payment_status,
                status=session.get("status"),
                subscription_id=session.get("subscription"),
                customer_id=session.get("customer"),
                amount_total=int(session.get("amount_total") or 0),
                metadata=tuple((str(k), str(v)) for k, v in metadata.items()),
            )

        except stripe.StripeError as exc:
            metrics.record_stripe_call("get_checkout_session", False)
            logger.error(
                "stripe_checkout_session_retrieve_failed",
                session_id=session_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to retrieve checkout session: {exc}") from exc

    async def create_subscription(
        self,
        api_key: str,
        customer_id: str,
        item: CheckoutLineItem,
        billing_cycle_anchor: datetime,
        metadata: tuple[tuple[str, str], ...],
    ) -> SubscriptionSnapshot:
        """
        Start a subscription against the customer's saved payment method.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        key = _require_key(api_key)
        try:
            logger.info(
                "creating_stripe_subscription",
                customer_id=customer_id,
                quantity=item.quantity,
            )

            price = stripe.Price.create(
                api_key=key,
                unit_amount=item.unit_amount_minor,
                currency=item.currency.lower(),
                recurring={"interval": "month"},
                product_data={"name": item.name},
            )
            subscription = stripe.Subscription.create(
                api_key=key,
                customer=customer_id,
                items=[{"price": price.id, "quantity": item.quantity}],
                collection_method="charge_automatically",
                billing_cycle_anchor=int(billing_cycle_anchor.timestamp()),
                proration_behavior="none",
                metadata=dict(metadata),
            )

            logger.info("stripe_subscription_created", subscription_id=subscription.id)
            metrics.record_stripe_call("create_subscription", True)
            return _to_subscription_snapshot(subscription)

        except stripe.StripeError as exc:
            metrics.record_stripe_call("create_subscription", False)
            logger.error(
                "stripe_subscription_create_failed",
                customer_id=customer_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to create subscription: {exc}") from exc

    async def get_subscription(self, api_key: str, subscription_id: str) -> SubscriptionSnapshot:
        """
        Retrieve a subscription.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            subscription = stripe.Subscription.retrieve(
                subscription_id, api_key=_require_key(api_key)
            )
            metrics.record_stripe_call("get_subscription", True)
            return _to_subscription_snapshot(subscription)

        except stripe.StripeError as exc:
            metrics.record_stripe_call("get_subscription", False)
            logger.error(
                "stripe_subscription_retrieve_failed",
                subscription_id=subscription_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to retrieve subscription: {exc}") from exc

    async def update_subscription_quantity(
        self, api_key: str, subscription: SubscriptionSnapshot, quantity: int
    ) -> QuantityUpdateResult:
        """
        Change the seat quantity of the subscription's first item.

        Proration is invoiced immediately; the amount actually paid is read
        back from the resulting invoice.

        Raises:
            PaymentProviderError: If Stripe API call fails or there is no item
        """
        if subscription.item_id is None:
            raise PaymentProviderError(f"Subscription {subscription.subscription_id} has no items")
        if quantity <= 0:
            raise PaymentProviderError("Quantity must be positive; cancel instead")

        try:
            logger.info(
                "updating_stripe_subscription_quantity",
                subscription_id=subscription.subscription_id,
                previous_quantity=subscription.quantity,
                new_quantity=quantity,
            )

            updated = stripe.Subscription.modify(
                subscription.subscription_id,
                api_key=_require_key(api_key),
                items=[{"id": subscription.item_id, "quantity": quantity}],
                proration_behavior="always_invoice",
                expand=["latest_invoice"],
            )

            invoice = updated.get("latest_invoice")
            invoice_id: str | None = None
            amount_paid = 0
            if isinstance(invoice, str):
                invoice_id = invoice
            elif invoice is not None:
                invoice_id = invoice.id
                amount_paid = int(invoice.get("amount_paid") or 0)

            logger.info(
                "stripe_subscription_quantity_updated",
                subscription_id=subscription.subscription_id,
                invoice_id=invoice_id,
                amount_paid=amount_paid,
            )
            metrics.record_stripe_call("update_subscription_quantity", True)
            return QuantityUpdateResult(
                subscription_id=updated.id,
                quantity=quantity,
                invoice_id=invoice_id,
                amount_paid_minor=amount_paid,
            )

        except stripe.StripeError as exc:
            metrics.record_stripe_call("update_subscription_quantity", False)
            logger.error(
                "stripe_subscription_update_failed",
                subscription_id=subscription.subscription_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to update subscription: {exc}") from exc

    async def cancel_subscription(self, api_key: str, subscription_id: str) -> None:
        """
        Cancel a subscription immediately.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info("cancelling_stripe_subscription", subscription_id=subscription_id)

            stripe.Subscription.cancel(subscription_id, api_key=_require_key(api_key))

            logger.info("stripe_subscription_cancelled", subscription_id=subscription_id)
            metrics.record_stripe_call("cancel_subscription", True)

        except stripe.StripeError as exc:
            metrics.record_stripe_call("cancel_subscription", False)
            logger.error(
                "stripe_subscription_cancel_failed",
                subscription_id=subscription_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to cancel subscription: {exc}") from exc

    async def create_portal_session(self, api_key: str, customer_id: str, return_url: str) -> str:
        """
        Create a customer billing portal session.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            session = stripe.billing_portal.Session.create(
                api_key=_require_key(api_key),
                customer=customer_id,
                return_url=return_url,
            )
            metrics.record_stripe_call("create_portal_session", True)
            return session.url

        except stripe.StripeError as exc:
            metrics.record_stripe_call("create_portal_session", False)
            logger.error(
                "stripe_portal_session_failed",
                customer_id=customer_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to create portal session: {exc}") from exc
