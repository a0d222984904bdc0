"""
Tests for SubscriptionService.

The payment provider is mocked; these tests cover the local bookkeeping
around each Stripe call.
"""

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import create_auth_context, create_mock_company
from sqlalchemy.exc import IntegrityError, OperationalError

from grattia.config import settings
from grattia.db.models import CompanyPointTransaction, PlatformSetting, SubscriptionEvent
from grattia.exceptions import (
    CompanyNotFoundError,
    InvalidOperationError,
    PaymentNotCompletedError,
    PaymentProviderError,
    SubscriptionNotFoundError,
)
from grattia.models.api import PendingMember, SubscriptionStatus
from grattia.models.domain import CheckoutSessionInfo, SubscriptionSnapshot
from grattia.services.payment_provider import (
    CheckoutResult,
    PaymentProvider,
    QuantityUpdateResult,
)
from grattia.services.subscriptions import (
    SubscriptionService,
    map_stripe_status,
    quote_points_purchase,
)


@pytest.fixture
def provider() -> AsyncMock:
    provider = AsyncMock(spec=PaymentProvider)
    provider.create_checkout_session.return_value = CheckoutResult(
        session_id="cs_test_1", url="https://checkout.stripe.com/c/cs_test_1"
    )
    return provider


@pytest.fixture
def config():
    return settings.model_copy(
        update={
            "stripe_secret_key_test": "sk_test_123",
            "stripe_secret_key_live": "sk_live_123",
            "stripe_seat_price_minor": 299,
            "stripe_fee_percent": Decimal("0.029"),
            "stripe_fee_fixed_minor": 30,
        }
    )


@pytest.fixture
def service(db_session: AsyncMock, provider: AsyncMock, config) -> SubscriptionService:
    return SubscriptionService(db_session, provider, config)


def checkout_info(
    company_id,
    mode: str = "subscription",
    payment_status: str = "paid",
    status: str | None = "complete",
    amount_total: int = 897,
    **metadata: str,
) -> CheckoutSessionInfo:
    return CheckoutSessionInfo(
        session_id="cs_test_1",
        mode=mode,
        payment_status=payment_status,
        status=status,
        subscription_id="sub_new" if mode == "subscription" else None,
        customer_id="cus_test_123",
        amount_total=amount_total,
        metadata=(("company_id", str(company_id)), *metadata.items()),
    )


def snapshot(quantity: int = 3, status: str = "active") -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        subscription_id="sub_test_123",
        status=status,
        quantity=quantity,
        item_id="si_1",
        current_period_end=datetime(2026, 4, 1, tzinfo=UTC),
    )


def added(db_session: AsyncMock, model: type) -> list:
    return [c.args[0] for c in db_session.add.call_args_list if isinstance(c.args[0], model)]


class TestQuotePointsPurchase:
    def test_fee_is_percent_plus_fixed(self) -> None:
        quote = quote_points_purchase(1000, Decimal("0.01"), Decimal("0.029"), 30)
        assert quote.points_cost_minor == 1000
        assert quote.stripe_fee_minor == 59
        assert quote.total_minor == 1059

    def test_rounds_half_up(self) -> None:
        # 50 points at 0.01 = 50 cents; 50 * 0.029 = 1.45 -> 1
        quote = quote_points_purchase(50, Decimal("0.01"), Decimal("0.029"), 30)
        assert quote.stripe_fee_minor == 31

    @pytest.mark.parametrize("points", [0, -5])
    def test_rejects_non_positive_points(self, points: int) -> None:
        with pytest.raises(InvalidOperationError):
            quote_points_purchase(points, Decimal("0.01"), Decimal("0.029"), 30)


class TestMapStripeStatus:
    @pytest.mark.parametrize(
        ("stripe_status", "expected"),
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("past_due", SubscriptionStatus.PAST_DUE),
            ("canceled", SubscriptionStatus.CANCELLED),
            ("incomplete_expired", SubscriptionStatus.CANCELLED),
            ("paused", SubscriptionStatus.INACTIVE),
        ],
    )
    def test_mapping(self, stripe_status: str, expected: SubscriptionStatus) -> None:
        assert map_stripe_status(stripe_status) == expected


class TestCheckout:
    async def test_existing_customer_is_reused(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock, company
    ) -> None:
        actor = create_auth_context(company_id=company.id, is_admin=True)
        db_session.get = AsyncMock(return_value=company)

        result = await service.create_setup_checkout(actor, "https://app.example.com/")

        assert result.session_id == "cs_test_1"
        provider.create_customer.assert_not_awaited()
        api_key, request = provider.create_checkout_session.await_args.args
        assert api_key == "sk_test_123"
        assert request.mode == "setup"
        assert request.line_items == ()
        assert request.success_url.startswith("https://app.example.com/dashboard/settings?")
        assert ("setup_type", "billing_method") in request.metadata

    async def test_customer_created_lazily_in_company_environment(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock
    ) -> None:
        company = create_mock_company(
            environment="live", stripe_customer_id=None, stripe_subscription_id=None
        )
        actor = create_auth_context(company_id=company.id, is_admin=True, email="boss@acme.io")
        db_session.get = AsyncMock(return_value=company)
        provider.create_customer.return_value = "cus_live_new"

        await service.create_subscription_checkout(actor, "https://app.example.com", 4)

        assert provider.create_customer.await_args.args[0] == "sk_live_123"
        assert provider.create_customer.await_args.kwargs["email"] == "boss@acme.io"
        company.set_stripe_customer_id.assert_called_once_with("cus_live_new")
        request = provider.create_checkout_session.await_args.args[1]
        assert request.customer_id == "cus_live_new"
        (item,) = request.line_items
        assert (item.quantity, item.unit_amount_minor, item.recurring_monthly) == (4, 299, True)

    async def test_pending_member_travels_in_metadata(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock
    ) -> None:
        company = create_mock_company(stripe_subscription_id=None)
        actor = create_auth_context(company_id=company.id, is_admin=True)
        db_session.get = AsyncMock(return_value=company)
        pending = PendingMember(email="new@acme.io", first_name="New", last_name="Hire")

        await service.create_subscription_checkout(actor, "https://app", 1, pending)

        metadata = dict(provider.create_checkout_session.await_args.args[1].metadata)
        assert "new@acme.io" in metadata["pending_member_data"]

    async def test_subscribed_company_cannot_check_out_again(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock, company
    ) -> None:
        db_session.get = AsyncMock(return_value=company)

        with pytest.raises(InvalidOperationError, match="already has an active subscription"):
            await service.create_subscription_checkout(
                create_auth_context(company_id=company.id, is_admin=True), "https://app", 2
            )

        provider.create_customer.assert_not_awaited()
        provider.create_checkout_session.assert_not_awaited()

    async def test_zero_employees_rejected(self, service: SubscriptionService) -> None:
        with pytest.raises(InvalidOperationError):
            await service.create_subscription_checkout(create_auth_context(), "https://app", 0)

    async def test_missing_key_for_environment(
        self, db_session: AsyncMock, provider: AsyncMock, config, company
    ) -> None:
        config = config.model_copy(update={"stripe_secret_key_test": ""})
        service = SubscriptionService(db_session, provider, config)
        db_session.get = AsyncMock(return_value=company)

        with pytest.raises(PaymentProviderError):
            await service.create_setup_checkout(create_auth_context(company_id=company.id), "x")


class TestVerifyCheckoutSession:
    """Tests for confirming completed checkouts."""

    async def test_setup_session_marks_billing_ready(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock
    ) -> None:
        company = create_mock_company(billing_ready=False, stripe_subscription_id=None)
        provider.get_checkout_session.return_value = checkout_info(
            company.id, mode="setup", payment_status="no_payment_required"
        )

        with patch.object(
            service, "_lock_company_for_update", new_callable=AsyncMock
        ) as mock_lock:
            mock_lock.return_value = company
            result = await service.verify_checkout_session(
                create_auth_context(company_id=company.id), "cs_test_1"
            )

        assert company.billing_ready is True
        assert result.already_processed is False
        db_session.commit.assert_awaited_once()

    async def test_subscription_session_activates_company(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock
    ) -> None:
        company = create_mock_company(stripe_subscription_id=None, subscription_status="inactive")
        provider.get_checkout_session.return_value = checkout_info(
            company.id, employee_count="3"
        )

        with (
            patch.object(
                service, "_lock_company_for_update", new_callable=AsyncMock
            ) as mock_lock,
            patch.object(
                service, "_session_already_recorded", new_callable=AsyncMock
            ) as mock_seen,
        ):
            mock_lock.return_value = company
            mock_seen.return_value = False
            result = await service.verify_checkout_session(
                create_auth_context(company_id=company.id), "cs_test_1"
            )

        assert result.subscription_id == "sub_new"
        assert company.stripe_subscription_id == "sub_new"
        assert company.subscription_status == "active"
        assert company.billing_cycle_anchor is not None
        (event,) = added(db_session, SubscriptionEvent)
        assert event.event_type == "subscription_created"
        assert event.new_quantity == 3
        assert event.amount_charged == 897
        assert event.stripe_session_id == "cs_test_1"

    async def test_already_recorded_session_is_noop(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock, company
    ) -> None:
        provider.get_checkout_session.return_value = checkout_info(company.id)

        with (
            patch.object(
                service, "_lock_company_for_update", new_callable=AsyncMock
            ) as mock_lock,
            patch.object(
                service, "_session_already_recorded", new_callable=AsyncMock
            ) as mock_seen,
        ):
            mock_lock.return_value = company
            mock_seen.return_value = True
            result = await service.verify_checkout_session(
                create_auth_context(company_id=company.id), "cs_test_1"
            )

        assert result.already_processed is True
        db_session.add.assert_not_called()
        db_session.commit.assert_not_awaited()

    async def test_session_for_second_subscription_keeps_stored_one(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock
    ) -> None:
        company = create_mock_company(stripe_subscription_id="sub_test_123")
        provider.get_checkout_session.return_value = checkout_info(
            company.id, employee_count="2"
        )

        with (
            patch.object(
                service, "_lock_company_for_update", new_callable=AsyncMock
            ) as mock_lock,
            patch.object(
                service, "_session_already_recorded", new_callable=AsyncMock
            ) as mock_seen,
        ):
            mock_lock.return_value = company
            mock_seen.return_value = False
            with pytest.raises(InvalidOperationError, match="different active subscription"):
                await service.verify_checkout_session(
                    create_auth_context(company_id=company.id), "cs_test_1"
                )

        assert company.stripe_subscription_id == "sub_test_123"
        db_session.add.assert_not_called()
        db_session.commit.assert_not_awaited()
        provider.cancel_subscription.assert_not_awaited()

    async def test_unpaid_session(
        self, service: SubscriptionService, provider: AsyncMock, company
    ) -> None:
        provider.get_checkout_session.return_value = checkout_info(
            company.id, payment_status="unpaid"
        )

        with patch.object(
            service, "_lock_company_for_update", new_callable=AsyncMock
        ) as mock_lock:
            mock_lock.return_value = company
            with pytest.raises(PaymentNotCompletedError):
                await service.verify_checkout_session(
                    create_auth_context(company_id=company.id), "cs_test_1"
                )

    async def test_session_of_another_company(
        self, service: SubscriptionService, provider: AsyncMock, company
    ) -> None:
        other = create_mock_company()
        provider.get_checkout_session.return_value = checkout_info(other.id)

        with patch.object(
            service, "_lock_company_for_update", new_callable=AsyncMock
        ) as mock_lock:
            mock_lock.return_value = company
            with pytest.raises(InvalidOperationError):
                await service.verify_checkout_session(
                    create_auth_context(company_id=company.id), "cs_test_1"
                )

    async def test_db_failure_after_stripe_is_reraised(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock
    ) -> None:
        company = create_mock_company(billing_ready=False)
        provider.get_checkout_session.return_value = checkout_info(company.id, mode="setup")
        db_session.commit = AsyncMock(side_effect=OperationalError("commit", {}, Exception()))

        with patch.object(
            service, "_lock_company_for_update", new_callable=AsyncMock
        ) as mock_lock:
            mock_lock.return_value = company
            with pytest.raises(OperationalError):
                await service.verify_checkout_session(
                    create_auth_context(company_id=company.id), "cs_test_1"
                )

        db_session.rollback.assert_awaited_once()


class TestStartSubscription:
    async def test_skipped_without_billing_method(
        self, service: SubscriptionService, provider: AsyncMock
    ) -> None:
        company = create_mock_company(billing_ready=False, stripe_subscription_id=None)
        with patch.object(
            service, "_lock_company_for_update", new_callable=AsyncMock
        ) as mock_lock:
            mock_lock.return_value = company
            assert await service.start_subscription_if_ready(company.id) is None
        provider.create_subscription.assert_not_awaited()

    async def test_existing_subscription_returned(
        self, service: SubscriptionService, provider: AsyncMock, company
    ) -> None:
        with patch.object(
            service, "_lock_company_for_update", new_callable=AsyncMock
        ) as mock_lock:
            mock_lock.return_value = company
            assert await service.start_subscription_if_ready(company.id) == "sub_test_123"
        provider.create_subscription.assert_not_awaited()

    async def test_starts_with_anchor_on_first_of_next_month(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock
    ) -> None:
        company = create_mock_company(stripe_subscription_id=None, subscription_status="inactive")
        provider.create_subscription.return_value = snapshot(quantity=2)

        with (
            patch.object(
                service, "_lock_company_for_update", new_callable=AsyncMock
            ) as mock_lock,
            patch.object(
                service, "count_billable_members", new_callable=AsyncMock
            ) as mock_count,
        ):
            mock_lock.return_value = company
            mock_count.return_value = 2
            subscription_id = await service.start_subscription_if_ready(company.id)

        assert subscription_id == "sub_test_123"
        kwargs = provider.create_subscription.await_args.kwargs
        assert kwargs["item"].quantity == 2
        anchor = kwargs["billing_cycle_anchor"]
        assert anchor.day == 1
        assert anchor > datetime.now(UTC)
        assert company.billing_cycle_anchor == anchor
        assert company.subscription_status == "active"
        (event,) = added(db_session, SubscriptionEvent)
        assert event.details["trigger"] == "first_member_login"

    async def test_no_seats_no_subscription(
        self, service: SubscriptionService, provider: AsyncMock
    ) -> None:
        company = create_mock_company(stripe_subscription_id=None)
        with (
            patch.object(
                service, "_lock_company_for_update", new_callable=AsyncMock
            ) as mock_lock,
            patch.object(
                service, "count_billable_members", new_callable=AsyncMock
            ) as mock_count,
        ):
            mock_lock.return_value = company
            mock_count.return_value = 0
            assert await service.start_subscription_if_ready(company.id) is None
        provider.create_subscription.assert_not_awaited()


class TestUpdateSubscriptionQuantity:
    """Tests for seat reconciliation."""

    async def test_increase_records_invoice(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock, company
    ) -> None:
        provider.get_subscription.return_value = snapshot(quantity=3)
        provider.update_subscription_quantity.return_value = QuantityUpdateResult(
            subscription_id="sub_test_123", quantity=5, invoice_id="in_1", amount_paid_minor=598
        )

        with patch.object(
            service, "_lock_company_for_update", new_callable=AsyncMock
        ) as mock_lock:
            mock_lock.return_value = company
            change = await service.update_subscription_quantity(company.id, 5)

        assert (change.previous_quantity, change.new_quantity) == (3, 5)
        assert change.amount_charged == 598
        (event,) = added(db_session, SubscriptionEvent)
        assert event.event_type == "quantity_updated"
        assert event.stripe_invoice_id == "in_1"
        assert event.details == {"change_type": "increase"}

    async def test_zero_cancels_instead_of_updating(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock, company
    ) -> None:
        provider.get_subscription.return_value = snapshot(quantity=1)

        with patch.object(
            service, "_lock_company_for_update", new_callable=AsyncMock
        ) as mock_lock:
            mock_lock.return_value = company
            change = await service.update_subscription_quantity(company.id, 0)

        assert change.cancelled is True
        provider.cancel_subscription.assert_awaited_once_with("sk_test_123", "sub_test_123")
        provider.update_subscription_quantity.assert_not_awaited()
        assert company.stripe_subscription_id is None
        assert company.subscription_status == "cancelled"
        (event,) = added(db_session, SubscriptionEvent)
        assert event.details == {"reason": "no_employees"}

    async def test_same_quantity_is_noop(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock, company
    ) -> None:
        provider.get_subscription.return_value = snapshot(quantity=4)

        with patch.object(
            service, "_lock_company_for_update", new_callable=AsyncMock
        ) as mock_lock:
            mock_lock.return_value = company
            change = await service.update_subscription_quantity(company.id, 4)

        assert change.message == "Quantity unchanged"
        provider.update_subscription_quantity.assert_not_awaited()
        db_session.add.assert_not_called()

    async def test_negative_quantity(self, service: SubscriptionService) -> None:
        with pytest.raises(InvalidOperationError):
            await service.update_subscription_quantity(create_mock_company().id, -1)

    async def test_no_subscription(self, service: SubscriptionService) -> None:
        company = create_mock_company(stripe_subscription_id=None)
        with patch.object(
            service, "_lock_company_for_update", new_callable=AsyncMock
        ) as mock_lock:
            mock_lock.return_value = company
            with pytest.raises(SubscriptionNotFoundError):
                await service.update_subscription_quantity(company.id, 2)

    async def test_unknown_company(self, service: SubscriptionService) -> None:
        with pytest.raises(CompanyNotFoundError):
            await service.update_subscription_quantity(create_mock_company().id, 2)


class TestSubscriptionStatus:
    async def test_without_subscription(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock
    ) -> None:
        company = create_mock_company(stripe_subscription_id=None, subscription_status="inactive")
        db_session.get = AsyncMock(return_value=company)

        with patch.object(
            service, "count_billable_members", new_callable=AsyncMock
        ) as mock_count:
            mock_count.return_value = 6
            report = await service.get_subscription_status(company.id)

        assert report.has_subscription is False
        assert report.member_count == 6
        assert report.amount_per_member == 299
        provider.get_subscription.assert_not_awaited()

    async def test_refreshes_stored_status(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock, company
    ) -> None:
        db_session.get = AsyncMock(return_value=company)
        provider.get_subscription.return_value = snapshot(quantity=6, status="past_due")

        with patch.object(
            service, "count_billable_members", new_callable=AsyncMock
        ) as mock_count:
            mock_count.return_value = 6
            report = await service.get_subscription_status(company.id)

        assert report.status == SubscriptionStatus.PAST_DUE
        assert report.next_billing_date == datetime(2026, 4, 1, tzinfo=UTC)
        assert company.subscription_status == "past_due"
        db_session.commit.assert_awaited_once()


class TestPointsPurchase:
    """Tests for buying points with a one-off payment."""

    async def test_checkout_uses_exchange_rate_setting(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock, company
    ) -> None:
        rate = MagicMock(spec=PlatformSetting)
        rate.value = '"0.02"'

        async def fake_get(model, key):
            return rate if model is PlatformSetting else company

        db_session.get = AsyncMock(side_effect=fake_get)
        actor = create_auth_context(company_id=company.id, is_admin=True)

        result, quote = await service.create_points_checkout(actor, "https://app", 500)

        assert result.session_id == "cs_test_1"
        assert quote.points_cost_minor == 1000
        assert quote.stripe_fee_minor == 59
        request = provider.create_checkout_session.await_args.args[1]
        assert request.mode == "payment"
        assert [i.unit_amount_minor for i in request.line_items] == [1000, 59]
        assert dict(request.metadata)["points"] == "500"

    async def test_exchange_rate_defaults_when_unset(
        self, service: SubscriptionService, db_session: AsyncMock
    ) -> None:
        db_session.get = AsyncMock(return_value=None)
        assert await service.get_exchange_rate() == Decimal("0.01")

    async def test_verify_credits_company(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock
    ) -> None:
        company = create_mock_company(points_balance=200)
        provider.get_checkout_session.return_value = checkout_info(
            company.id, mode="payment", points="500", stripe_fee="59", amount_total=559
        )
        db_session.get = AsyncMock(return_value=MagicMock())

        with (
            patch.object(
                service, "_lock_company_for_update", new_callable=AsyncMock
            ) as mock_lock,
            patch.object(service, "_find_points_payment", new_callable=AsyncMock) as mock_find,
        ):
            mock_lock.return_value = company
            mock_find.return_value = None
            result = await service.verify_points_payment(
                create_auth_context(company_id=company.id), "cs_test_1"
            )

        assert result.points_added == 500
        assert result.new_balance == 700
        (row,) = added(db_session, CompanyPointTransaction)
        assert row.transaction_type == "stripe_payment"
        assert (row.stripe_fee, row.total_amount) == (59, 559)
        assert row.stripe_session_id == "cs_test_1"

    async def test_verify_is_idempotent(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock
    ) -> None:
        company = create_mock_company(points_balance=700)
        existing = MagicMock(spec=CompanyPointTransaction)
        existing.amount = 500

        with (
            patch.object(
                service, "_lock_company_for_update", new_callable=AsyncMock
            ) as mock_lock,
            patch.object(service, "_find_points_payment", new_callable=AsyncMock) as mock_find,
        ):
            mock_lock.return_value = company
            mock_find.return_value = existing
            result = await service.verify_points_payment(
                create_auth_context(company_id=company.id), "cs_test_1"
            )

        assert result.message == "Payment already processed"
        assert result.new_balance == 700
        provider.get_checkout_session.assert_not_awaited()
        db_session.add.assert_not_called()

    async def test_concurrent_verification_loses_unique_race(
        self, service: SubscriptionService, db_session: AsyncMock, provider: AsyncMock
    ) -> None:
        company = create_mock_company(points_balance=200)
        provider.get_checkout_session.return_value = checkout_info(
            company.id, mode="payment", points="500"
        )
        db_session.flush = AsyncMock(
            side_effect=IntegrityError("insert", {}, Exception("uq_company_transactions"))
        )

        with (
            patch.object(
                service, "_lock_company_for_update", new_callable=AsyncMock
            ) as mock_lock,
            patch.object(service, "_find_points_payment", new_callable=AsyncMock) as mock_find,
        ):
            mock_lock.return_value = company
            mock_find.return_value = None
            result = await service.verify_points_payment(
                create_auth_context(company_id=company.id), "cs_test_1"
            )

        assert result.message == "Payment already processed"
        db_session.rollback.assert_awaited_once()
        db_session.refresh.assert_awaited_once_with(company)

    async def test_unpaid_points_session(
        self, service: SubscriptionService, provider: AsyncMock, company
    ) -> None:
        provider.get_checkout_session.return_value = checkout_info(
            company.id, mode="payment", payment_status="unpaid", points="500"
        )

        with (
            patch.object(
                service, "_lock_company_for_update", new_callable=AsyncMock
            ) as mock_lock,
            patch.object(service, "_find_points_payment", new_callable=AsyncMock) as mock_find,
        ):
            mock_lock.return_value = company
            mock_find.return_value = None
            with pytest.raises(PaymentNotCompletedError):
                await service.verify_points_payment(
                    create_auth_context(company_id=company.id), "cs_test_1"
                )
