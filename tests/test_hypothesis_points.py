"""
Hypothesis Property-Based Tests for points arithmetic.

Verifies invariants of the pure helpers behind platform adjustments, reward
pricing, points purchases, allocation scheduling and redemption status.
"""

import calendar
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from uuid import uuid4

import pytest
from hypothesis import assume, given
from hypothesis import strategies as st
from pydantic import ValidationError

from grattia.exceptions import InsufficientPointsError, InvalidOperationError
from grattia.models.api import (
    CompanyPointsAdjustmentRequest,
    GivePointsRequest,
    PointsOperation,
    RedemptionStatus,
)
from grattia.models.domain import MonthlyBudget, PointsAdjustmentIntent
from grattia.services.allocation import allocation_day
from grattia.services.catalog import compute_points_cost
from grattia.services.ledger import apply_adjustment
from grattia.services.redemptions import FULFILMENT_ORDER, can_transition
from grattia.services.subscriptions import quote_points_purchase

# ============================================================================
# Hypothesis Strategies
# ============================================================================

balances = st.integers(min_value=0, max_value=10_000_000)
positive_amounts = st.integers(min_value=1, max_value=10_000_000)
operations = st.sampled_from(list(PointsOperation))
prices = st.decimals(min_value=Decimal("0.01"), max_value=Decimal("10000"), places=2)
multipliers = st.decimals(min_value=Decimal("0.01"), max_value=Decimal("100"), places=2)
integer_prices = st.integers(min_value=1, max_value=10_000).map(Decimal)
statuses = st.sampled_from(list(RedemptionStatus))


def intent(amount: int, operation: PointsOperation) -> PointsAdjustmentIntent:
    return PointsAdjustmentIntent(uuid4(), amount, operation, "Adjustment")


# ============================================================================
# Platform Adjustments
# ============================================================================


class TestApplyAdjustmentProperties:
    @given(balance=balances, amount=positive_amounts)
    def test_grant_adds_exactly(self, balance: int, amount: int) -> None:
        change = apply_adjustment(balance, intent(amount, PointsOperation.GRANT))
        assert change.previous == balance
        assert change.new == balance + amount

    @given(balance=balances, amount=positive_amounts)
    def test_removal_never_goes_negative(self, balance: int, amount: int) -> None:
        if amount > balance:
            with pytest.raises(InsufficientPointsError):
                apply_adjustment(balance, intent(amount, PointsOperation.REMOVE))
        else:
            change = apply_adjustment(balance, intent(amount, PointsOperation.REMOVE))
            assert change.new == balance - amount
            assert change.new >= 0

    @given(balance=balances, amount=positive_amounts, operation=operations)
    def test_delta_is_signed_amount(
        self, balance: int, amount: int, operation: PointsOperation
    ) -> None:
        assume(operation == PointsOperation.GRANT or amount <= balance)
        adjustment = intent(amount, operation)
        change = apply_adjustment(balance, adjustment)
        assert change.delta == adjustment.signed_amount
        assert abs(change.delta) == amount

    @given(amount=st.integers(max_value=0))
    def test_non_positive_amount_rejected(self, amount: int) -> None:
        with pytest.raises(ValueError):
            intent(amount, PointsOperation.GRANT)

    @given(amount=st.integers(max_value=0))
    def test_request_model_rejects_non_positive(self, amount: int) -> None:
        with pytest.raises(ValidationError):
            CompanyPointsAdjustmentRequest(
                company_id=uuid4(),
                amount=amount,
                operation=PointsOperation.GRANT,
                description="x",
            )


# ============================================================================
# Reward Pricing
# ============================================================================


class TestComputePointsCostProperties:
    @given(price=prices, multiplier=multipliers)
    def test_matches_half_up_rounding(self, price: Decimal, multiplier: Decimal) -> None:
        expected = int((price * multiplier).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        if expected < 1:
            with pytest.raises(InvalidOperationError):
                compute_points_cost(price, multiplier)
        else:
            assert compute_points_cost(price, multiplier) == expected

    @given(price=integer_prices, multiplier=st.integers(min_value=1, max_value=100))
    def test_integer_multiplier_scales_exactly(self, price: Decimal, multiplier: int) -> None:
        assert compute_points_cost(price, Decimal(multiplier)) == int(price) * multiplier

    @given(price=prices, low=multipliers, high=multipliers)
    def test_monotonic_in_multiplier(self, price: Decimal, low: Decimal, high: Decimal) -> None:
        assume(low <= high)
        assume(price * low >= Decimal("0.5"))
        assert compute_points_cost(price, low) <= compute_points_cost(price, high)

    def test_documented_examples(self) -> None:
        assert compute_points_cost(Decimal("19.99"), Decimal("1.5")) == 30
        assert compute_points_cost(Decimal("25.00"), Decimal("0.5")) == 13
        assert compute_points_cost(Decimal("25.00"), Decimal("2")) == 50


# ============================================================================
# Points Purchase
# ============================================================================


class TestQuotePointsPurchaseProperties:
    @given(points=st.integers(min_value=1, max_value=1_000_000))
    def test_fee_covers_fixed_charge(self, points: int) -> None:
        quote = quote_points_purchase(points, Decimal("0.01"), Decimal("0.029"), 30)
        assert quote.points_cost_minor == points
        assert quote.stripe_fee_minor >= 30
        assert quote.total_minor == quote.points_cost_minor + quote.stripe_fee_minor

    def test_example(self) -> None:
        quote = quote_points_purchase(1000, Decimal("0.01"), Decimal("0.029"), 30)
        assert (quote.points_cost_minor, quote.stripe_fee_minor) == (1000, 59)


# ============================================================================
# Allocation Scheduling
# ============================================================================


class TestAllocationDayProperties:
    @given(anchor=st.datetimes(timezones=st.just(UTC)), day=st.dates())
    def test_within_month(self, anchor: datetime, day: date) -> None:
        result = allocation_day(anchor, day)
        assert 1 <= result <= calendar.monthrange(day.year, day.month)[1]
        assert result <= anchor.day

    @given(day=st.dates())
    def test_no_anchor_is_first(self, day: date) -> None:
        assert allocation_day(None, day) == 1

    def test_31st_anchor_clamped_in_february(self) -> None:
        anchor = datetime(2026, 1, 31, tzinfo=UTC)
        assert allocation_day(anchor, date(2026, 2, 10)) == 28


class TestMonthlyBudgetProperties:
    @given(allocated=balances, spent=balances)
    def test_remaining_never_negative(self, allocated: int, spent: int) -> None:
        budget = MonthlyBudget(date(2026, 3, 1), allocated, spent)
        assert budget.remaining == max(0, allocated - spent)


# ============================================================================
# Redemption Status
# ============================================================================


class TestRedemptionTransitionProperties:
    @given(current=statuses, target=statuses)
    def test_fulfilment_only_moves_forward(
        self, current: RedemptionStatus, target: RedemptionStatus
    ) -> None:
        assume(target != RedemptionStatus.CANCELLED)
        assume(current != RedemptionStatus.CANCELLED)
        allowed = can_transition(current, target)
        assert allowed == (FULFILMENT_ORDER.index(target) > FULFILMENT_ORDER.index(current))

    @given(target=statuses)
    def test_cancelled_is_terminal(self, target: RedemptionStatus) -> None:
        assert can_transition(RedemptionStatus.CANCELLED, target) is False

    def test_cannot_cancel_after_shipping(self) -> None:
        assert can_transition(RedemptionStatus.SHIPPED, RedemptionStatus.CANCELLED) is False
        assert can_transition(RedemptionStatus.PROCESSING, RedemptionStatus.CANCELLED) is True


class TestGivePointsRequestProperties:
    @given(points=st.integers(max_value=0))
    def test_non_positive_points_rejected(self, points: int) -> None:
        with pytest.raises(ValidationError):
            GivePointsRequest(recipient_id=uuid4(), points=points, description="Thanks")
