"""
Members Service - Profile lifecycle within a company.

invited -> active on first login, -> deactivated on removal. Any change in
the number of billable members is followed by a seat reconciliation against
the company's subscription; reconciliation failures are logged, not raised.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from grattia.db.models import (
    Company,
    CompanyPointTransaction,
    PointTransaction,
    Profile,
)
from grattia.exceptions import (
    AuthorizationError,
    CompanyNotFoundError,
    GrattiaError,
    InvalidOperationError,
    LastAdminError,
    MemberAlreadyExistsError,
    MemberNotFoundError,
    WriteVerificationError,
)
from grattia.models.api import CompanyTransactionType, MemberStatus, PointTransactionType
from grattia.models.domain import AuthContext
from grattia.services.subscriptions import SubscriptionService

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RemovalResult:
    member_id: UUID
    points_returned: int


class MembersService:
    """Invite, activate and remove company members."""

    def __init__(
        self, session: AsyncSession, subscriptions: SubscriptionService | None = None
    ) -> None:
        self.session = session
        self.subscriptions = subscriptions

    async def resolve_profile(self, user_id: UUID, email: str | None) -> Profile | None:
        """
        Find the caller's profile by token subject.

        An invited profile has no subject yet; on the first authenticated
        request it is matched by email and linked.
        """
        stmt = select(Profile).where(Profile.user_id == user_id)
        profile = (await self.session.execute(stmt)).scalar_one_or_none()
        if profile is not None or not email:
            return profile

        stmt = select(Profile).where(
            func.lower(Profile.email) == email.lower(), Profile.user_id.is_(None)
        )
        profile = (await self.session.execute(stmt)).scalar_one_or_none()
        if profile is None:
            return None

        profile.user_id = user_id
        await self.session.commit()
        logger.info("profile_linked_to_user", profile_id=str(profile.id), user_id=str(user_id))
        return profile

    async def activate_on_first_login(
        self, actor: AuthContext, now: datetime | None = None
    ) -> Profile:
        """
        Move an invited member to active and stamp first_login_at.

        Active members are returned unchanged. Deactivated members stay
        deactivated.
        """
        profile = await self.session.get(Profile, actor.profile_id)
        if profile is None:
            raise MemberNotFoundError(actor.profile_id)
        if profile.status != MemberStatus.INVITED.value:
            return profile

        profile.status = MemberStatus.ACTIVE.value
        profile.first_login_at = now or _utc_now()
        await self.session.commit()
        logger.info(
            "member_activated", profile_id=str(profile.id), company_id=str(profile.company_id)
        )

        if not profile.is_admin:
            await self._sync_billing(profile.company_id, start_if_ready=True)
        return profile

    async def invite_member(
        self,
        actor: AuthContext,
        email: str,
        first_name: str,
        last_name: str,
        is_admin: bool = False,
        department: str | None = None,
    ) -> Profile:
        """
        Create an invited profile in the caller's company.

        Raises:
            AuthorizationError: caller is not a company admin
            MemberAlreadyExistsError: email already has a profile
        """
        self._require_company_admin(actor, actor.company_id)

        existing = await self.session.execute(
            select(Profile.id).where(func.lower(Profile.email) == email.lower())
        )
        if existing.scalar_one_or_none() is not None:
            raise MemberAlreadyExistsError(email)

        company = await self.session.get(Company, actor.company_id)
        if company is None:
            raise CompanyNotFoundError(actor.company_id)

        profile = Profile(
            id=uuid4(),
            company_id=company.id,
            email=email.lower(),
            first_name=first_name,
            last_name=last_name,
            department=department,
            is_admin=is_admin,
            status=MemberStatus.INVITED.value,
            points=0,
        )
        self.session.add(profile)
        try:
            await self.session.flush()
            if await self.session.get(Profile, profile.id) is None:
                raise WriteVerificationError(f"Profile {profile.id} not found after insert")
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise MemberAlreadyExistsError(email) from exc

        logger.info(
            "member_invited",
            profile_id=str(profile.id),
            company_id=str(company.id),
            is_admin=is_admin,
            invited_by=str(actor.profile_id),
        )
        return profile

    async def remove_member(self, actor: AuthContext, member_id: UUID) -> RemovalResult:
        """
        Deactivate a member and return their points to the company.

        Raises:
            AuthorizationError: caller is not an admin of the member's company
            MemberNotFoundError: member missing or in another company
            LastAdminError: member is the company's only active admin
        """
        self._require_company_admin(actor, actor.company_id)

        company = await self._lock_company_for_update(actor.company_id)
        if company is None:
            raise CompanyNotFoundError(actor.company_id)

        member = await self._lock_profile_for_update(member_id)
        if (
            member is None
            or member.company_id != company.id
            or member.status == MemberStatus.DEACTIVATED.value
        ):
            raise MemberNotFoundError(member_id, company.id)

        if member.is_admin and await self._count_active_admins(company.id) <= 1:
            raise LastAdminError(company.id)

        points_returned = member.points
        if points_returned > 0:
            description = f"Points returned from removed member {member.full_name}"
            self.session.add(
                PointTransaction(
                    company_id=company.id,
                    sender_profile_id=member.id,
                    recipient_profile_id=None,
                    points=points_returned,
                    transaction_type=PointTransactionType.MEMBER_REMOVAL_RETURN.value,
                    description=description,
                    created_by=actor.user_id,
                )
            )
            self.session.add(
                CompanyPointTransaction(
                    company_id=company.id,
                    amount=points_returned,
                    transaction_type=CompanyTransactionType.MEMBER_REMOVAL_RETURN.value,
                    description=description,
                    created_by=actor.user_id,
                )
            )
            company.points_balance = company.points_balance + points_returned

        member.points = 0
        member.status = MemberStatus.DEACTIVATED.value
        await self.session.commit()

        logger.info(
            "member_removed",
            member_id=str(member_id),
            company_id=str(company.id),
            points_returned=points_returned,
            removed_by=str(actor.profile_id),
        )

        await self._sync_billing(company.id, start_if_ready=False)
        return RemovalResult(member_id=member_id, points_returned=points_returned)

    async def update_monthly_limit(self, actor: AuthContext, limit: int) -> int:
        """Set the points each member receives per monthly allocation."""
        self._require_company_admin(actor, actor.company_id)
        if limit < 0:
            raise InvalidOperationError("Monthly limit cannot be negative")

        company = await self.session.get(Company, actor.company_id)
        if company is None:
            raise CompanyNotFoundError(actor.company_id)

        company.team_member_monthly_limit = limit
        await self.session.commit()
        logger.info("monthly_limit_updated", company_id=str(company.id), limit=limit)
        return limit

    async def list_members(self, company_id: UUID) -> list[Profile]:
        stmt = (
            select(Profile)
            .where(Profile.company_id == company_id)
            .order_by(Profile.last_name, Profile.first_name)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    @staticmethod
    def _require_company_admin(actor: AuthContext, company_id: UUID) -> None:
        if not actor.is_admin or actor.company_id != company_id:
            raise AuthorizationError("company_admin")

    async def _sync_billing(self, company_id: UUID, start_if_ready: bool) -> None:
        if self.subscriptions is None:
            return
        try:
            if start_if_ready:
                started = await self.subscriptions.start_subscription_if_ready(company_id)
                if started is not None:
                    await self.subscriptions.reconcile_seats(company_id)
            else:
                await self.subscriptions.reconcile_seats(company_id)
        except (GrattiaError, SQLAlchemyError) as exc:
            logger.error(
                "seat_reconciliation_failed",
                company_id=str(company_id),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _count_active_admins(self, company_id: UUID) -> int:
        stmt = (
            select(func.count())
            .select_from(Profile)
            .where(
                Profile.company_id == company_id,
                Profile.is_admin.is_(True),
                Profile.status != MemberStatus.DEACTIVATED.value,
            )
        )
        return int((await self.session.execute(stmt)).scalar_one())

    async def _lock_company_for_update(self, company_id: UUID) -> Company | None:
        stmt = select(Company).where(Company.id == company_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_profile_for_update(self, profile_id: UUID) -> Profile | None:
        stmt = select(Profile).where(Profile.id == profile_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
