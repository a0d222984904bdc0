"""
Tests for exception classes.

Covers typed attributes and messages of the Grattia exception hierarchy.
"""

from uuid import uuid4

import pytest

from grattia.exceptions import (
    AuthorizationError,
    CatalogProviderError,
    CompanyNotFoundError,
    DuplicateRewardError,
    GrattiaError,
    InsufficientPointsError,
    InvalidStatusTransitionError,
    LastAdminError,
    MemberAlreadyExistsError,
    MemberNotFoundError,
    PaymentNotCompletedError,
    PaymentProviderError,
    SubscriptionNotFoundError,
    WriteVerificationError,
)


class TestGrattiaError:
    def test_is_exception(self):
        assert issubclass(GrattiaError, Exception)

    @pytest.mark.parametrize(
        "exc",
        [
            CompanyNotFoundError(uuid4()),
            MemberNotFoundError(uuid4()),
            InsufficientPointsError(1, 2),
            LastAdminError(uuid4()),
            PaymentProviderError("boom"),
            CatalogProviderError("goody", "boom"),
        ],
    )
    def test_all_inherit_base(self, exc):
        """Every domain error can be caught as GrattiaError."""
        assert isinstance(exc, GrattiaError)


class TestInsufficientPointsError:
    def test_attributes(self):
        exc = InsufficientPointsError(balance=50, required=100)
        assert exc.balance == 50
        assert exc.required == 100
        assert str(exc) == "Insufficient points. Balance: 50, Required: 100"

    def test_custom_message(self):
        exc = InsufficientPointsError(10, 25, "Insufficient monthly points")
        assert str(exc).startswith("Insufficient monthly points.")


class TestMemberNotFoundError:
    def test_without_company(self):
        member_id = uuid4()
        exc = MemberNotFoundError(member_id)
        assert exc.company_id is None
        assert str(exc) == f"Member not found: {member_id}"

    def test_with_company(self):
        member_id, company_id = uuid4(), uuid4()
        exc = MemberNotFoundError(member_id, company_id)
        assert str(company_id) in str(exc)


class TestOtherErrors:
    def test_last_admin(self):
        assert str(LastAdminError(uuid4())) == "Cannot remove the last admin of a company"

    def test_member_already_exists(self):
        exc = MemberAlreadyExistsError("a@b.io")
        assert exc.email == "a@b.io"
        assert "a@b.io" in str(exc)

    def test_duplicate_reward(self):
        exc = DuplicateRewardError("rye", "B0TEST")
        assert str(exc) == "Reward already imported: rye/B0TEST"

    def test_status_transition(self):
        exc = InvalidStatusTransitionError("delivered", "pending")
        assert (exc.current, exc.target) == ("delivered", "pending")
        assert "delivered -> pending" in str(exc)

    def test_payment_not_completed(self):
        exc = PaymentNotCompletedError("cs_1", "unpaid")
        assert exc.session_id == "cs_1"
        assert str(exc) == "Payment not completed (status: unpaid)"

    def test_subscription_not_found_message_is_generic(self):
        assert str(SubscriptionNotFoundError(uuid4())) == "Company subscription not found"

    def test_catalog_provider(self):
        exc = CatalogProviderError("goody", "timeout")
        assert exc.provider == "goody"
        assert str(exc) == "goody catalog error: timeout"

    def test_authorization_hides_permission(self):
        exc = AuthorizationError("platform_admin")
        assert exc.required_permission == "platform_admin"
        assert str(exc) == "Insufficient permissions"

    def test_write_verification(self):
        assert str(WriteVerificationError("row missing")).endswith("row missing")
