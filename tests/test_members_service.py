"""
Tests for MembersService: linking, activation, invitation and removal.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from conftest import create_auth_context, create_mock_company, create_mock_profile, make_result
from sqlalchemy.exc import IntegrityError, OperationalError

from grattia.db.models import CompanyPointTransaction, PointTransaction, Profile
from grattia.exceptions import (
    AuthorizationError,
    InvalidOperationError,
    LastAdminError,
    MemberAlreadyExistsError,
    MemberNotFoundError,
    PaymentProviderError,
)
from grattia.models.api import MemberStatus
from grattia.services.members import MembersService
from grattia.services.subscriptions import SubscriptionService


@pytest.fixture
def subscriptions() -> AsyncMock:
    return AsyncMock(spec=SubscriptionService)


@pytest.fixture
def members(db_session: AsyncMock, subscriptions: AsyncMock) -> MembersService:
    return MembersService(db_session, subscriptions)


def added(db_session: AsyncMock, model: type) -> list:
    return [c.args[0] for c in db_session.add.call_args_list if isinstance(c.args[0], model)]


class TestResolveProfile:
    async def test_known_subject(self, members: MembersService, db_session: AsyncMock) -> None:
        profile = create_mock_profile(user_id=uuid4())
        db_session.execute = AsyncMock(return_value=make_result(scalar=profile))

        assert await members.resolve_profile(profile.user_id, profile.email) is profile
        db_session.commit.assert_not_awaited()

    async def test_invited_profile_linked_by_email(
        self, members: MembersService, db_session: AsyncMock
    ) -> None:
        invited = create_mock_profile(status=MemberStatus.INVITED, email="new@acme.io")
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=None), make_result(scalar=invited)]
        )
        user_id = uuid4()

        result = await members.resolve_profile(user_id, "New@Acme.io")

        assert result is invited
        assert invited.user_id == user_id
        db_session.commit.assert_awaited_once()

    async def test_unknown_user(self, members: MembersService, db_session: AsyncMock) -> None:
        assert await members.resolve_profile(uuid4(), "stranger@example.com") is None
        db_session.commit.assert_not_awaited()

    async def test_no_email_claim_skips_linking(
        self, members: MembersService, db_session: AsyncMock
    ) -> None:
        assert await members.resolve_profile(uuid4(), None) is None
        assert db_session.execute.await_count == 1


class TestActivateOnFirstLogin:
    """Tests for the invited -> active transition."""

    async def test_member_activation_starts_billing(
        self, members: MembersService, db_session: AsyncMock, subscriptions: AsyncMock
    ) -> None:
        profile = create_mock_profile(status=MemberStatus.INVITED)
        db_session.get = AsyncMock(return_value=profile)
        subscriptions.start_subscription_if_ready.return_value = "sub_1"
        now = datetime(2026, 3, 2, 8, 30, tzinfo=UTC)
        actor = create_auth_context(
            company_id=profile.company_id, profile_id=profile.id, status=MemberStatus.INVITED
        )

        result = await members.activate_on_first_login(actor, now=now)

        assert result.status == "active"
        assert result.first_login_at == now
        subscriptions.start_subscription_if_ready.assert_awaited_once_with(profile.company_id)
        subscriptions.reconcile_seats.assert_awaited_once_with(profile.company_id)

    async def test_admin_activation_does_not_touch_billing(
        self, members: MembersService, db_session: AsyncMock, subscriptions: AsyncMock
    ) -> None:
        profile = create_mock_profile(status=MemberStatus.INVITED, is_admin=True)
        db_session.get = AsyncMock(return_value=profile)

        await members.activate_on_first_login(create_auth_context(profile_id=profile.id))

        assert profile.status == "active"
        subscriptions.start_subscription_if_ready.assert_not_awaited()

    async def test_already_active_is_unchanged(
        self, members: MembersService, db_session: AsyncMock
    ) -> None:
        profile = create_mock_profile(status=MemberStatus.ACTIVE)
        db_session.get = AsyncMock(return_value=profile)

        await members.activate_on_first_login(create_auth_context(profile_id=profile.id))

        assert profile.first_login_at is None
        db_session.commit.assert_not_awaited()

    async def test_deactivated_stays_deactivated(
        self, members: MembersService, db_session: AsyncMock
    ) -> None:
        profile = create_mock_profile(status=MemberStatus.DEACTIVATED)
        db_session.get = AsyncMock(return_value=profile)

        result = await members.activate_on_first_login(create_auth_context(profile_id=profile.id))

        assert result.status == "deactivated"

    async def test_billing_failure_does_not_fail_activation(
        self, members: MembersService, db_session: AsyncMock, subscriptions: AsyncMock
    ) -> None:
        profile = create_mock_profile(status=MemberStatus.INVITED)
        db_session.get = AsyncMock(return_value=profile)
        subscriptions.start_subscription_if_ready.side_effect = PaymentProviderError("declined")

        result = await members.activate_on_first_login(create_auth_context(profile_id=profile.id))

        assert result.status == "active"
        db_session.commit.assert_awaited_once()


class TestInviteMember:
    async def test_creates_invited_profile(
        self, members: MembersService, db_session: AsyncMock, company, admin_auth
    ) -> None:
        async def fake_get(model, key):
            return company if model is not Profile else MagicMock()

        db_session.get = AsyncMock(side_effect=fake_get)

        profile = await members.invite_member(admin_auth, "Grace@Example.com", "Grace", "Hopper")

        assert isinstance(profile, Profile)
        assert profile.email == "grace@example.com"
        assert profile.status == "invited"
        assert profile.points == 0
        assert profile.company_id == company.id
        db_session.commit.assert_awaited_once()

    async def test_duplicate_email(
        self, members: MembersService, db_session: AsyncMock, admin_auth
    ) -> None:
        db_session.execute = AsyncMock(return_value=make_result(scalar=uuid4()))

        with pytest.raises(MemberAlreadyExistsError):
            await members.invite_member(admin_auth, "dup@example.com", "Dup", "Licate")
        db_session.add.assert_not_called()

    async def test_unique_violation_race(
        self, members: MembersService, db_session: AsyncMock, company, admin_auth
    ) -> None:
        db_session.get = AsyncMock(return_value=company)
        db_session.flush = AsyncMock(side_effect=IntegrityError("insert", {}, Exception("email")))

        with pytest.raises(MemberAlreadyExistsError):
            await members.invite_member(admin_auth, "race@example.com", "Race", "Condition")
        db_session.rollback.assert_awaited_once()

    async def test_non_admin_cannot_invite(self, members: MembersService, member_auth) -> None:
        with pytest.raises(AuthorizationError):
            await members.invite_member(member_auth, "x@example.com", "X", "Y")


class TestRemoveMember:
    """Tests for deactivation and points return."""

    async def test_points_return_to_company(
        self,
        members: MembersService,
        db_session: AsyncMock,
        subscriptions: AsyncMock,
        company,
        admin_auth,
    ) -> None:
        leaving = create_mock_profile(company_id=company.id, points=120)

        with (
            patch.object(
                members, "_lock_company_for_update", new_callable=AsyncMock
            ) as mock_company,
            patch.object(
                members, "_lock_profile_for_update", new_callable=AsyncMock
            ) as mock_profile,
        ):
            mock_company.return_value = company
            mock_profile.return_value = leaving
            result = await members.remove_member(admin_auth, leaving.id)

        assert result.points_returned == 120
        assert company.points_balance == 1120
        assert leaving.points == 0
        assert leaving.status == "deactivated"

        (member_row,) = added(db_session, PointTransaction)
        assert member_row.transaction_type == "member_removal_return"
        assert member_row.sender_profile_id == leaving.id
        assert member_row.recipient_profile_id is None
        (company_row,) = added(db_session, CompanyPointTransaction)
        assert company_row.amount == 120

        # Allocation history is kept
        db_session.execute.assert_not_awaited()
        db_session.commit.assert_awaited_once()
        subscriptions.reconcile_seats.assert_awaited_once_with(company.id)
        subscriptions.start_subscription_if_ready.assert_not_awaited()

    async def test_member_without_points(
        self, members: MembersService, db_session: AsyncMock, company, admin_auth
    ) -> None:
        leaving = create_mock_profile(company_id=company.id, points=0)

        with (
            patch.object(
                members, "_lock_company_for_update", new_callable=AsyncMock
            ) as mock_company,
            patch.object(
                members, "_lock_profile_for_update", new_callable=AsyncMock
            ) as mock_profile,
        ):
            mock_company.return_value = company
            mock_profile.return_value = leaving
            result = await members.remove_member(admin_auth, leaving.id)

        assert result.points_returned == 0
        assert company.points_balance == 1000
        db_session.add.assert_not_called()

    async def test_last_admin_cannot_be_removed(
        self, members: MembersService, db_session: AsyncMock, company, admin_auth
    ) -> None:
        sole_admin = create_mock_profile(company_id=company.id, is_admin=True, points=10)

        with (
            patch.object(
                members, "_lock_company_for_update", new_callable=AsyncMock
            ) as mock_company,
            patch.object(
                members, "_lock_profile_for_update", new_callable=AsyncMock
            ) as mock_profile,
            patch.object(members, "_count_active_admins", new_callable=AsyncMock) as mock_count,
        ):
            mock_company.return_value = company
            mock_profile.return_value = sole_admin
            mock_count.return_value = 1
            with pytest.raises(LastAdminError):
                await members.remove_member(admin_auth, sole_admin.id)

        assert sole_admin.status == "active"
        db_session.commit.assert_not_awaited()

    async def test_member_of_other_company(
        self, members: MembersService, company, admin_auth
    ) -> None:
        outsider = create_mock_profile(company_id=uuid4())

        with (
            patch.object(
                members, "_lock_company_for_update", new_callable=AsyncMock
            ) as mock_company,
            patch.object(
                members, "_lock_profile_for_update", new_callable=AsyncMock
            ) as mock_profile,
        ):
            mock_company.return_value = company
            mock_profile.return_value = outsider
            with pytest.raises(MemberNotFoundError):
                await members.remove_member(admin_auth, outsider.id)

    async def test_reconcile_failure_is_logged_not_raised(
        self,
        members: MembersService,
        db_session: AsyncMock,
        subscriptions: AsyncMock,
        company,
        admin_auth,
    ) -> None:
        leaving = create_mock_profile(company_id=company.id, points=5)
        subscriptions.reconcile_seats.side_effect = OperationalError("select", {}, Exception())

        with (
            patch.object(
                members, "_lock_company_for_update", new_callable=AsyncMock
            ) as mock_company,
            patch.object(
                members, "_lock_profile_for_update", new_callable=AsyncMock
            ) as mock_profile,
        ):
            mock_company.return_value = company
            mock_profile.return_value = leaving
            result = await members.remove_member(admin_auth, leaving.id)

        assert result.points_returned == 5


class TestMonthlyLimit:
    async def test_update(
        self, members: MembersService, db_session: AsyncMock, admin_auth
    ) -> None:
        company = create_mock_company(team_member_monthly_limit=100)
        db_session.get = AsyncMock(return_value=company)

        assert await members.update_monthly_limit(admin_auth, 250) == 250
        assert company.team_member_monthly_limit == 250

    async def test_negative_rejected(self, members: MembersService, admin_auth) -> None:
        with pytest.raises(InvalidOperationError):
            await members.update_monthly_limit(admin_auth, -1)

    async def test_member_cannot_update(self, members: MembersService, member_auth) -> None:
        with pytest.raises(AuthorizationError):
            await members.update_monthly_limit(member_auth, 10)
