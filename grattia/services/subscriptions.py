"""
Subscription Service - Stripe customer, checkout and seat reconciliation.

Each company bills in its own Stripe environment (test or live); the matching
secret key and customer-id column are chosen per call. Stripe calls are not
compensated if the following database write fails: the failure is logged as
stripe_db_inconsistency and re-raised.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID, uuid4

from sqlalchemy import exists, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from grattia.config import Settings, settings
from grattia.db.models import (
    Company,
    CompanyPointTransaction,
    PlatformSetting,
    Profile,
    SubscriptionEvent,
)
from grattia.exceptions import (
    CompanyNotFoundError,
    InvalidOperationError,
    PaymentNotCompletedError,
    PaymentProviderError,
    SubscriptionNotFoundError,
    WriteVerificationError,
)
from grattia.models.api import (
    CompanyTransactionType,
    MemberStatus,
    PendingMember,
    SubscriptionEventType,
    SubscriptionStatus,
)
from grattia.models.domain import AuthContext, CheckoutSessionInfo
from grattia.observability.metrics import metrics
from grattia.services.ledger import next_month_start
from grattia.services.payment_provider import (
    CheckoutLineItem,
    CheckoutRequest,
    CheckoutResult,
    PaymentProvider,
)

logger = get_logger(__name__)

EXCHANGE_RATE_SETTING = "point_exchange_rate"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class PointsQuote:
    """Price of buying points, in minor units."""

    points: int
    points_cost_minor: int
    stripe_fee_minor: int

    @property
    def total_minor(self) -> int:
        return self.points_cost_minor + self.stripe_fee_minor


def quote_points_purchase(
    points: int, exchange_rate: Decimal, fee_percent: Decimal, fee_fixed_minor: int
) -> PointsQuote:
    """
    Price ``points`` at ``exchange_rate`` dollars each, passing the card fee on.

    cost = round(points × rate × 100); fee = round(cost × percent) + fixed.
    """
    if points <= 0:
        raise InvalidOperationError("Points must be positive")
    if exchange_rate <= 0:
        raise InvalidOperationError("Exchange rate must be positive")
    cost = _round_half_up(Decimal(points) * exchange_rate * 100)
    fee = _round_half_up(Decimal(cost) * fee_percent) + fee_fixed_minor
    return PointsQuote(points=points, points_cost_minor=cost, stripe_fee_minor=fee)


def map_stripe_status(stripe_status: str) -> SubscriptionStatus:
    """Translate a Stripe subscription status to the stored status."""
    if stripe_status in ("canceled", "incomplete_expired"):
        return SubscriptionStatus.CANCELLED
    try:
        return SubscriptionStatus(stripe_status)
    except ValueError:
        return SubscriptionStatus.INACTIVE


@dataclass(frozen=True)
class VerifiedSession:
    session_id: str
    mode: str
    subscription_id: str | None
    already_processed: bool


@dataclass(frozen=True)
class QuantityChange:
    message: str
    previous_quantity: int
    new_quantity: int
    amount_charged: int = 0
    cancelled: bool = False


@dataclass(frozen=True)
class SubscriptionStatusReport:
    has_subscription: bool
    status: SubscriptionStatus
    current_quantity: int
    member_count: int
    next_billing_date: datetime | None
    amount_per_member: int


@dataclass(frozen=True)
class PointsPaymentResult:
    message: str
    points_added: int
    new_balance: int


class SubscriptionService:
    """Stripe-backed billing lifecycle for companies."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        config: Settings = settings,
    ) -> None:
        self.session = session
        self.provider = provider
        self.config = config

    # ========================================================================
    # Customers & Checkout
    # ========================================================================

    async def ensure_customer(self, company: Company, email: str) -> str:
        """
        Return the company's Stripe customer id for its environment.

        The customer is created lazily on first use and stored in the
        environment-specific column.
        """
        existing = company.stripe_customer_id()
        if existing:
            return existing

        customer_id = await self.provider.create_customer(
            self._api_key(company),
            email=email,
            name=company.name,
            metadata=(
                ("company_id", str(company.id)),
                ("company_name", company.name),
                ("environment", company.environment),
            ),
        )
        company.set_stripe_customer_id(customer_id)
        await self._commit_after_stripe(company.id, "ensure_customer", customer_id=customer_id)

        logger.info(
            "stripe_customer_linked",
            company_id=str(company.id),
            environment=company.environment,
            customer_id=customer_id,
        )
        return customer_id

    async def create_setup_checkout(
        self, actor: AuthContext, origin: str, pending_member: PendingMember | None = None
    ) -> CheckoutResult:
        """Checkout session in setup mode to put a card on file."""
        company = await self._get_company(actor.company_id)
        customer_id = await self.ensure_customer(company, actor.email)
        base = origin.rstrip("/")

        metadata = [("company_id", str(company.id)), ("setup_type", "billing_method")]
        if pending_member is not None:
            metadata.append(("pending_member_data", pending_member.model_dump_json()))

        return await self.provider.create_checkout_session(
            self._api_key(company),
            CheckoutRequest(
                mode="setup",
                customer_id=customer_id,
                success_url=(
                    f"{base}/dashboard/settings?setup=success&session_id={{CHECKOUT_SESSION_ID}}"
                ),
                cancel_url=f"{base}/dashboard/settings?setup=cancel",
                metadata=tuple(metadata),
            ),
        )

    async def create_subscription_checkout(
        self,
        actor: AuthContext,
        origin: str,
        employee_count: int,
        pending_member: PendingMember | None = None,
    ) -> CheckoutResult:
        """
        Checkout session in subscription mode billing one seat per employee.

        Raises:
            InvalidOperationError: non-positive employee count, or the company
                is already subscribed (seat changes go through the quantity update)
        """
        if employee_count <= 0:
            raise InvalidOperationError("Employee count must be positive")

        company = await self._get_company(actor.company_id)
        if company.stripe_subscription_id:
            raise InvalidOperationError("Company already has an active subscription")
        customer_id = await self.ensure_customer(company, actor.email)
        base = origin.rstrip("/")

        metadata = [("company_id", str(company.id)), ("employee_count", str(employee_count))]
        if pending_member is not None:
            metadata.append(("pending_member_data", pending_member.model_dump_json()))

        return await self.provider.create_checkout_session(
            self._api_key(company),
            CheckoutRequest(
                mode="subscription",
                customer_id=customer_id,
                success_url=(
                    f"{base}/dashboard/settings?subscription=success"
                    f"&session_id={{CHECKOUT_SESSION_ID}}"
                ),
                cancel_url=f"{base}/dashboard/settings?subscription=cancel",
                metadata=tuple(metadata),
                line_items=(self._seat_line_item(employee_count),),
            ),
        )

    async def verify_checkout_session(
        self, actor: AuthContext, session_id: str
    ) -> VerifiedSession:
        """
        Confirm a completed checkout and record it on the company.

        Setup sessions mark billing as ready; subscription sessions store the
        subscription id and flip the company to active. Verifying the same
        session twice is a no-op.

        Raises:
            PaymentNotCompletedError: session not paid / not complete
            InvalidOperationError: session belongs to another company, or the
                company is already subscribed under another subscription id
        """
        company = await self._lock_company_for_update(actor.company_id)
        if company is None:
            raise CompanyNotFoundError(actor.company_id)

        info = await self.provider.get_checkout_session(self._api_key(company), session_id)
        self._check_session_company(info, company)

        if info.mode == "setup":
            if info.status != "complete":
                raise PaymentNotCompletedError(session_id, info.status or "open")
            if company.billing_ready:
                return VerifiedSession(session_id, info.mode, company.stripe_subscription_id, True)
            company.billing_ready = True
            await self._commit_after_stripe(
                company.id, "verify_setup_session", session_id=session_id
            )
            logger.info("billing_method_ready", company_id=str(company.id), session_id=session_id)
            return VerifiedSession(session_id, info.mode, company.stripe_subscription_id, False)

        if info.payment_status != "paid":
            raise PaymentNotCompletedError(session_id, info.payment_status)

        if await self._session_already_recorded(session_id):
            logger.info("checkout_session_already_processed", session_id=session_id)
            return VerifiedSession(session_id, info.mode, company.stripe_subscription_id, True)

        if (
            company.stripe_subscription_id
            and company.stripe_subscription_id != info.subscription_id
        ):
            # Both subscriptions bill in Stripe; the stored one keeps being reconciled
            logger.error(
                "stripe_db_inconsistency",
                company_id=str(company.id),
                operation="verify_checkout_session",
                session_id=session_id,
                stored_subscription_id=company.stripe_subscription_id,
                session_subscription_id=info.subscription_id,
            )
            raise InvalidOperationError("Company already has a different active subscription")

        now = _utc_now()
        company.stripe_subscription_id = info.subscription_id
        company.subscription_status = SubscriptionStatus.ACTIVE.value
        if company.billing_cycle_anchor is None:
            company.billing_cycle_anchor = now
        quantity_raw = info.metadata_value("employee_count")

        details = {"trigger": "checkout"}
        pending = info.metadata_value("pending_member_data")
        if pending:
            details["pending_member_data"] = pending
        self.session.add(
            SubscriptionEvent(
                company_id=company.id,
                event_type=SubscriptionEventType.SUBSCRIPTION_CREATED.value,
                new_quantity=(
                    int(quantity_raw) if quantity_raw and quantity_raw.isdigit() else None
                ),
                amount_charged=info.amount_total,
                stripe_subscription_id=info.subscription_id,
                stripe_session_id=session_id,
                details=details,
            )
        )
        await self._commit_after_stripe(
            company.id, "verify_checkout_session", session_id=session_id
        )

        metrics.record_subscription_change(SubscriptionEventType.SUBSCRIPTION_CREATED.value)
        logger.info(
            "subscription_activated",
            company_id=str(company.id),
            subscription_id=info.subscription_id,
            amount_total=info.amount_total,
        )
        return VerifiedSession(session_id, info.mode, info.subscription_id, False)

    async def create_customer_portal(self, actor: AuthContext, return_url: str) -> str:
        """Billing portal URL for the caller's company."""
        company = await self._get_company(actor.company_id)
        customer_id = await self.ensure_customer(company, actor.email)
        return await self.provider.create_portal_session(
            self._api_key(company), customer_id, return_url
        )

    # ========================================================================
    # Subscription Lifecycle
    # ========================================================================

    async def start_subscription_if_ready(self, company_id: UUID) -> str | None:
        """
        Create the subscription once the first member is active.

        Requires a card on file (billing_ready). Seats are active non-admin
        members; the first invoice lands on the 1st of next month. Returns the
        subscription id, or None when billing isn't ready or there are no seats.
        """
        company = await self._lock_company_for_update(company_id)
        if company is None:
            raise CompanyNotFoundError(company_id)
        if company.stripe_subscription_id:
            return company.stripe_subscription_id
        if not company.billing_ready:
            logger.info("subscription_start_skipped_no_billing", company_id=str(company_id))
            return None

        seats = await self.count_billable_members(company_id)
        customer_id = company.stripe_customer_id()
        if seats < 1 or not customer_id:
            return None

        now = _utc_now()
        anchor = datetime.combine(next_month_start(now.date()), datetime.min.time(), tzinfo=UTC)
        snapshot = await self.provider.create_subscription(
            self._api_key(company),
            customer_id=customer_id,
            item=self._seat_line_item(seats),
            billing_cycle_anchor=anchor,
            metadata=(
                ("company_id", str(company.id)),
                ("environment", company.environment),
                ("trigger", "first_member_login"),
            ),
        )

        company.stripe_subscription_id = snapshot.subscription_id
        company.subscription_status = SubscriptionStatus.ACTIVE.value
        company.billing_cycle_anchor = anchor
        self.session.add(
            SubscriptionEvent(
                company_id=company.id,
                event_type=SubscriptionEventType.SUBSCRIPTION_CREATED.value,
                new_quantity=seats,
                stripe_subscription_id=snapshot.subscription_id,
                details={"trigger": "first_member_login", "environment": company.environment},
            )
        )
        await self._commit_after_stripe(
            company.id, "start_subscription", subscription_id=snapshot.subscription_id
        )

        metrics.record_subscription_change(SubscriptionEventType.SUBSCRIPTION_CREATED.value)
        logger.info(
            "subscription_started",
            company_id=str(company.id),
            subscription_id=snapshot.subscription_id,
            seats=seats,
        )
        return snapshot.subscription_id

    async def update_subscription_quantity(
        self, company_id: UUID, new_quantity: int
    ) -> QuantityChange:
        """
        Reconcile the subscription's seat count.

        Zero seats cancels the subscription (it is never updated to quantity 0)
        and clears the stored subscription id.

        Raises:
            InvalidOperationError: negative quantity
            SubscriptionNotFoundError: company has no subscription
        """
        if new_quantity < 0:
            raise InvalidOperationError("Quantity cannot be negative")

        company = await self._lock_company_for_update(company_id)
        if company is None:
            raise CompanyNotFoundError(company_id)
        if not company.stripe_subscription_id:
            raise SubscriptionNotFoundError(company_id)

        api_key = self._api_key(company)
        subscription = await self.provider.get_subscription(
            api_key, company.stripe_subscription_id
        )
        previous = subscription.quantity

        if new_quantity == 0:
            await self.provider.cancel_subscription(api_key, subscription.subscription_id)

            company.stripe_subscription_id = None
            company.subscription_status = SubscriptionStatus.CANCELLED.value
            self.session.add(
                SubscriptionEvent(
                    company_id=company.id,
                    event_type=SubscriptionEventType.CANCELLED.value,
                    previous_quantity=previous,
                    new_quantity=0,
                    stripe_subscription_id=subscription.subscription_id,
                    details={"reason": "no_employees"},
                )
            )
            await self._commit_after_stripe(
                company.id, "cancel_subscription", subscription_id=subscription.subscription_id
            )

            metrics.record_subscription_change(SubscriptionEventType.CANCELLED.value)
            logger.info(
                "subscription_cancelled",
                company_id=str(company.id),
                subscription_id=subscription.subscription_id,
                previous_quantity=previous,
            )
            return QuantityChange(
                message="Subscription cancelled",
                previous_quantity=previous,
                new_quantity=0,
                cancelled=True,
            )

        if new_quantity == previous:
            return QuantityChange(
                message="Quantity unchanged", previous_quantity=previous, new_quantity=previous
            )

        update = await self.provider.update_subscription_quantity(
            api_key, subscription, new_quantity
        )

        self.session.add(
            SubscriptionEvent(
                company_id=company.id,
                event_type=SubscriptionEventType.QUANTITY_UPDATED.value,
                previous_quantity=previous,
                new_quantity=new_quantity,
                amount_charged=update.amount_paid_minor,
                stripe_subscription_id=update.subscription_id,
                stripe_invoice_id=update.invoice_id,
                details={"change_type": "increase" if new_quantity > previous else "decrease"},
            )
        )
        await self._commit_after_stripe(
            company.id, "update_subscription_quantity", subscription_id=update.subscription_id
        )

        metrics.record_subscription_change(SubscriptionEventType.QUANTITY_UPDATED.value)
        logger.info(
            "subscription_quantity_updated",
            company_id=str(company.id),
            previous_quantity=previous,
            new_quantity=new_quantity,
            amount_charged=update.amount_paid_minor,
        )
        return QuantityChange(
            message="Subscription updated",
            previous_quantity=previous,
            new_quantity=new_quantity,
            amount_charged=update.amount_paid_minor,
        )

    async def reconcile_seats(self, company_id: UUID) -> QuantityChange | None:
        """Match the subscription to the billable member count, if subscribed."""
        company = await self._get_company(company_id)
        if not company.stripe_subscription_id:
            return None
        seats = await self.count_billable_members(company_id)
        return await self.update_subscription_quantity(company_id, seats)

    async def get_subscription_status(self, company_id: UUID) -> SubscriptionStatusReport:
        """Current subscription state, refreshed from Stripe when subscribed."""
        company = await self._get_company(company_id)
        member_count = await self.count_billable_members(company_id)

        if not company.stripe_subscription_id:
            return SubscriptionStatusReport(
                has_subscription=False,
                status=SubscriptionStatus(company.subscription_status),
                current_quantity=0,
                member_count=member_count,
                next_billing_date=None,
                amount_per_member=self.config.stripe_seat_price_minor,
            )

        snapshot = await self.provider.get_subscription(
            self._api_key(company), company.stripe_subscription_id
        )
        status = map_stripe_status(snapshot.status)

        if company.subscription_status != status.value:
            company.subscription_status = status.value
            await self.session.commit()

        return SubscriptionStatusReport(
            has_subscription=True,
            status=status,
            current_quantity=snapshot.quantity,
            member_count=member_count,
            next_billing_date=snapshot.current_period_end,
            amount_per_member=self.config.stripe_seat_price_minor,
        )

    async def count_billable_members(self, company_id: UUID) -> int:
        """Active non-admin members, i.e. paid seats."""
        stmt = (
            select(func.count())
            .select_from(Profile)
            .where(
                Profile.company_id == company_id,
                Profile.status == MemberStatus.ACTIVE.value,
                Profile.is_admin.is_(False),
            )
        )
        return int((await self.session.execute(stmt)).scalar_one())

    # ========================================================================
    # Points Purchase
    # ========================================================================

    async def create_points_checkout(
        self, actor: AuthContext, origin: str, points: int
    ) -> tuple[CheckoutResult, PointsQuote]:
        """One-off payment session buying points for the company balance."""
        company = await self._get_company(actor.company_id)
        quote = quote_points_purchase(
            points,
            await self.get_exchange_rate(),
            self.config.stripe_fee_percent,
            self.config.stripe_fee_fixed_minor,
        )
        customer_id = await self.ensure_customer(company, actor.email)
        base = origin.rstrip("/")

        currency = self.config.stripe_currency
        result = await self.provider.create_checkout_session(
            self._api_key(company),
            CheckoutRequest(
                mode="payment",
                customer_id=customer_id,
                success_url=(
                    f"{base}/dashboard/settings?points_payment=success"
                    f"&session_id={{CHECKOUT_SESSION_ID}}"
                ),
                cancel_url=f"{base}/dashboard/settings?points_payment=cancel",
                metadata=(
                    ("company_id", str(company.id)),
                    ("points", str(points)),
                    ("user_id", str(actor.user_id)),
                    ("points_cost", str(quote.points_cost_minor)),
                    ("stripe_fee", str(quote.stripe_fee_minor)),
                ),
                line_items=(
                    CheckoutLineItem(
                        name=f"{points:,} Points",
                        description=f"Purchase {points} points for your company",
                        unit_amount_minor=quote.points_cost_minor,
                        quantity=1,
                        currency=currency,
                    ),
                    CheckoutLineItem(
                        name="Processing Fee",
                        description="Card processing fee",
                        unit_amount_minor=quote.stripe_fee_minor,
                        quantity=1,
                        currency=currency,
                    ),
                ),
            ),
        )
        logger.info(
            "points_checkout_created",
            company_id=str(company.id),
            points=points,
            total_minor=quote.total_minor,
            session_id=result.session_id,
        )
        return result, quote

    async def verify_points_payment(
        self, actor: AuthContext, session_id: str
    ) -> PointsPaymentResult:
        """
        Credit purchased points to the company once the session is paid.

        Idempotent on the Stripe session id.

        Raises:
            PaymentNotCompletedError: session not paid
        """
        company = await self._lock_company_for_update(actor.company_id)
        if company is None:
            raise CompanyNotFoundError(actor.company_id)

        existing = await self._find_points_payment(session_id)
        if existing is not None:
            return PointsPaymentResult(
                message="Payment already processed",
                points_added=existing.amount,
                new_balance=company.points_balance,
            )

        info = await self.provider.get_checkout_session(self._api_key(company), session_id)
        self._check_session_company(info, company)
        if info.payment_status != "paid":
            raise PaymentNotCompletedError(session_id, info.payment_status)

        points_raw = info.metadata_value("points")
        if not points_raw or not points_raw.isdigit() or int(points_raw) <= 0:
            raise InvalidOperationError("Checkout session has no points metadata")
        points = int(points_raw)
        fee_raw = info.metadata_value("stripe_fee")

        transaction = CompanyPointTransaction(
            id=uuid4(),
            company_id=company.id,
            amount=points,
            transaction_type=CompanyTransactionType.STRIPE_PAYMENT.value,
            description=f"Purchased {points} points via Stripe",
            created_by=actor.user_id,
            stripe_session_id=session_id,
            stripe_fee=int(fee_raw) if fee_raw and fee_raw.isdigit() else None,
            total_amount=info.amount_total,
            payment_status="completed",
        )
        company.points_balance = company.points_balance + points
        self.session.add(transaction)

        try:
            await self.session.flush()
            if await self.session.get(CompanyPointTransaction, transaction.id) is None:
                raise WriteVerificationError(
                    f"Transaction {transaction.id} not found after insert"
                )
            await self.session.commit()
        except IntegrityError:
            # Concurrent verification of the same session won the unique index
            await self.session.rollback()
            await self.session.refresh(company)
            return PointsPaymentResult(
                message="Payment already processed",
                points_added=points,
                new_balance=company.points_balance,
            )
        except (SQLAlchemyError, WriteVerificationError) as exc:
            await self.session.rollback()
            self._log_inconsistency(
                company.id, "verify_points_payment", exc, session_id=session_id
            )
            raise

        metrics.record_points_operation("stripe_purchase", True, points)
        logger.info(
            "points_purchase_credited",
            company_id=str(company.id),
            points=points,
            new_balance=company.points_balance,
            session_id=session_id,
        )
        return PointsPaymentResult(
            message="Points added", points_added=points, new_balance=company.points_balance
        )

    async def get_exchange_rate(self) -> Decimal:
        """Dollars per point, from platform settings or the configured default."""
        setting = await self.session.get(PlatformSetting, EXCHANGE_RATE_SETTING)
        if setting is None:
            return self.config.default_point_exchange_rate
        try:
            return Decimal(setting.value.strip('"'))
        except ArithmeticError:
            logger.warning("invalid_exchange_rate_setting", value=setting.value)
            return self.config.default_point_exchange_rate

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _api_key(self, company: Company) -> str:
        key = self.config.stripe_key_for(company.environment)
        if not key:
            raise PaymentProviderError(
                f"Stripe secret key not configured for {company.environment} environment"
            )
        return key

    def _seat_line_item(self, quantity: int) -> CheckoutLineItem:
        return CheckoutLineItem(
            name="Team Member Subscription",
            description="Monthly subscription per team member",
            unit_amount_minor=self.config.stripe_seat_price_minor,
            quantity=quantity,
            currency=self.config.stripe_currency,
            recurring_monthly=True,
        )

    @staticmethod
    def _check_session_company(info: CheckoutSessionInfo, company: Company) -> None:
        session_company = info.metadata_value("company_id")
        if session_company is not None and session_company != str(company.id):
            logger.warning(
                "checkout_session_company_mismatch",
                session_id=info.session_id,
                company_id=str(company.id),
            )
            raise InvalidOperationError("Checkout session belongs to another company")

    async def _commit_after_stripe(self, company_id: UUID, operation: str, **context: str) -> None:
        """Commit the local half of a Stripe-backed change."""
        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            self._log_inconsistency(company_id, operation, exc, **context)
            raise

    @staticmethod
    def _log_inconsistency(
        company_id: UUID, operation: str, exc: Exception, **context: str
    ) -> None:
        metrics.record_error(type(exc).__name__, operation)
        logger.error(
            "stripe_db_inconsistency",
            company_id=str(company_id),
            operation=operation,
            error=str(exc),
            **context,
        )

    async def _get_company(self, company_id: UUID) -> Company:
        company = await self.session.get(Company, company_id)
        if company is None:
            raise CompanyNotFoundError(company_id)
        return company

    async def _lock_company_for_update(self, company_id: UUID) -> Company | None:
        """Lock company row for update (SELECT FOR UPDATE)."""
        stmt = select(Company).where(Company.id == company_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _session_already_recorded(self, session_id: str) -> bool:
        stmt = select(exists().where(SubscriptionEvent.stripe_session_id == session_id))
        return bool((await self.session.execute(stmt)).scalar())

    async def _find_points_payment(self, session_id: str) -> CompanyPointTransaction | None:
        stmt = select(CompanyPointTransaction).where(
            CompanyPointTransaction.stripe_session_id == session_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
