"""
Points Ledger Service - Balance mutations with write verification.

Every change to a stored balance (profiles.points or companies.points_balance)
is made under a row lock and committed in the same transaction as its audit
row, so a failed audit insert rolls the balance change back.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from uuid import UUID, uuid4

from sqlalchemy import and_, desc, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from grattia.db.models import (
    Company,
    CompanyPointTransaction,
    MonthlyPointsAllocation,
    PointTransaction,
    Profile,
)
from grattia.exceptions import (
    AuthorizationError,
    CompanyNotFoundError,
    DataIntegrityError,
    InsufficientPointsError,
    InvalidOperationError,
    MemberNotFoundError,
    WriteVerificationError,
)
from grattia.models.api import (
    CompanyTransactionType,
    MemberStatus,
    PointsOperation,
    PointTransactionType,
)
from grattia.models.domain import AuthContext, BalanceChange, MonthlyBudget, PointsAdjustmentIntent
from grattia.observability.metrics import metrics

logger = get_logger(__name__)

# Ledger rows where the sender's redeemable points went down
DEBIT_TYPES = (
    PointTransactionType.PLATFORM_DEDUCTION.value,
    PointTransactionType.REDEMPTION.value,
    PointTransactionType.MEMBER_REMOVAL_RETURN.value,
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def month_start(day: date) -> date:
    """First day of the calendar month containing ``day``."""
    return day.replace(day=1)


def next_month_start(day: date) -> date:
    start = month_start(day)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def _month_window(day: date) -> tuple[datetime, datetime]:
    return (
        datetime.combine(month_start(day), time.min, tzinfo=UTC),
        datetime.combine(next_month_start(day), time.min, tzinfo=UTC),
    )


def apply_adjustment(balance: int, intent: PointsAdjustmentIntent) -> BalanceChange:
    """
    Compute the result of a grant or removal against ``balance``.

    Raises:
        InsufficientPointsError: removal larger than the balance
    """
    if intent.operation == PointsOperation.REMOVE and intent.amount > balance:
        raise InsufficientPointsError(balance, intent.amount, "Insufficient points balance")
    return BalanceChange(previous=balance, new=balance + intent.signed_amount)


@dataclass(frozen=True)
class CompanyAdjustmentResult:
    """Outcome of a platform grant/removal on a company balance."""

    company_id: UUID
    company_name: str
    operation: PointsOperation
    amount: int
    change: BalanceChange
    transaction_id: UUID


@dataclass(frozen=True)
class MemberAdjustmentResult:
    """Outcome of a platform grant/removal on a member balance."""

    member_id: UUID
    operation: PointsOperation
    amount: int
    change: BalanceChange
    description: str
    transaction_id: UUID


@dataclass(frozen=True)
class RecognitionResult:
    """Outcome of one member recognising another."""

    transaction_id: UUID
    points: int
    sender_remaining: int
    recipient_points: int
    funded_by: str


@dataclass(frozen=True)
class BalanceAudit:
    """Stored balance compared with the balance derived from the ledger."""

    member_id: UUID
    stored_points: int
    ledger_points: int

    @property
    def consistent(self) -> bool:
        return self.stored_points == self.ledger_points


@dataclass(frozen=True)
class LeaderboardRow:
    profile_id: UUID
    first_name: str
    last_name: str
    points_received: int


class PointsLedgerService:
    """Points ledger operations with row locking and write verification."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ========================================================================
    # Platform Adjustments
    # ========================================================================

    async def adjust_company_points(
        self, actor: AuthContext, intent: PointsAdjustmentIntent
    ) -> CompanyAdjustmentResult:
        """
        Grant or remove points from a company balance (platform admin only).

        Raises:
            AuthorizationError: caller is not a platform admin
            CompanyNotFoundError: company doesn't exist
            InsufficientPointsError: removal larger than the balance
        """
        self._require_platform_admin(actor)

        company = await self._lock_company_for_update(intent.company_id)
        if company is None:
            raise CompanyNotFoundError(intent.company_id)

        try:
            change = apply_adjustment(company.points_balance, intent)
        except InsufficientPointsError:
            metrics.record_points_operation(f"company_{intent.operation.value}", False)
            raise

        transaction = CompanyPointTransaction(
            id=uuid4(),
            company_id=company.id,
            amount=intent.amount,
            transaction_type=(
                CompanyTransactionType.PLATFORM_GRANT.value
                if intent.operation == PointsOperation.GRANT
                else CompanyTransactionType.PLATFORM_DEDUCTION.value
            ),
            description=intent.description,
            created_by=actor.user_id,
            payment_status="completed",
        )
        company.points_balance = change.new

        await self._commit_verified(
            transaction,
            CompanyPointTransaction,
            Company,
            company.id,
            "points_balance",
            change.new,
        )

        logger.info(
            "platform_company_points_adjusted",
            company_id=str(company.id),
            operation=intent.operation.value,
            amount=intent.amount,
            previous_balance=change.previous,
            new_balance=change.new,
            actor_id=str(actor.user_id),
        )
        metrics.record_points_operation(
            f"company_{intent.operation.value}", True, intent.amount
        )

        return CompanyAdjustmentResult(
            company_id=company.id,
            company_name=company.name,
            operation=intent.operation,
            amount=intent.amount,
            change=change,
            transaction_id=transaction.id,
        )

    async def adjust_member_points(
        self, actor: AuthContext, intent: PointsAdjustmentIntent
    ) -> MemberAdjustmentResult:
        """
        Grant or remove points from a member balance (platform admin only).

        The member must belong to ``intent.company_id``.

        Raises:
            AuthorizationError: caller is not a platform admin
            MemberNotFoundError: member doesn't exist in that company
            InsufficientPointsError: removal larger than the balance
        """
        self._require_platform_admin(actor)
        if intent.member_id is None:
            raise InvalidOperationError("member_id is required")

        member = await self._lock_profile_for_update(intent.member_id)
        if member is None or member.company_id != intent.company_id:
            raise MemberNotFoundError(intent.member_id, intent.company_id)

        try:
            change = apply_adjustment(member.points, intent)
        except InsufficientPointsError:
            metrics.record_points_operation(f"member_{intent.operation.value}", False)
            raise

        verb = "granted" if intent.operation == PointsOperation.GRANT else "removed"
        description = f"Platform admin {verb} {intent.amount} points: {intent.description}"
        transaction = PointTransaction(
            id=uuid4(),
            company_id=member.company_id,
            sender_profile_id=None if intent.operation == PointsOperation.GRANT else member.id,
            recipient_profile_id=member.id if intent.operation == PointsOperation.GRANT else None,
            points=intent.amount,
            transaction_type=(
                PointTransactionType.PLATFORM_GRANT.value
                if intent.operation == PointsOperation.GRANT
                else PointTransactionType.PLATFORM_DEDUCTION.value
            ),
            description=description,
            created_by=actor.user_id,
        )
        member.points = change.new

        await self._commit_verified(
            transaction, PointTransaction, Profile, member.id, "points", change.new
        )

        logger.info(
            "platform_member_points_adjusted",
            member_id=str(member.id),
            company_id=str(member.company_id),
            operation=intent.operation.value,
            amount=intent.amount,
            previous_points=change.previous,
            new_points=change.new,
            actor_id=str(actor.user_id),
        )
        metrics.record_points_operation(f"member_{intent.operation.value}", True, intent.amount)

        return MemberAdjustmentResult(
            member_id=member.id,
            operation=intent.operation,
            amount=intent.amount,
            change=change,
            description=description,
            transaction_id=transaction.id,
        )

    # ========================================================================
    # Recognition
    # ========================================================================

    async def give_points(
        self,
        actor: AuthContext,
        recipient_id: UUID,
        points: int,
        description: str,
        now: datetime | None = None,
    ) -> RecognitionResult:
        """
        Recognise a colleague with points.

        Company admins spend the company points balance; everyone else spends
        their monthly allowance. The recipient's redeemable points grow by
        the same amount in the same transaction.

        Raises:
            InvalidOperationError: self-gift, non-positive points, inactive sender
            MemberNotFoundError: recipient missing, inactive, or in another company
            InsufficientPointsError: allowance or company balance too small
        """
        now = now or _utc_now()
        if points <= 0:
            raise InvalidOperationError("Points must be positive")
        if recipient_id == actor.profile_id:
            raise InvalidOperationError("You cannot give points to yourself")
        if actor.status != MemberStatus.ACTIVE:
            raise InvalidOperationError("Only active members can give points")

        company: Company | None = None
        if actor.is_admin:
            company = await self._lock_company_for_update(actor.company_id)
            if company is None:
                raise CompanyNotFoundError(actor.company_id)

        # Lock both profiles in a stable order
        locked = await self._lock_profiles_for_update(sorted([actor.profile_id, recipient_id]))
        sender = locked.get(actor.profile_id)
        recipient = locked.get(recipient_id)
        if sender is None:
            raise MemberNotFoundError(actor.profile_id)
        if (
            recipient is None
            or recipient.company_id != sender.company_id
            or recipient.status != MemberStatus.ACTIVE.value
        ):
            raise MemberNotFoundError(recipient_id, sender.company_id)

        if company is not None:
            if company.points_balance < points:
                raise InsufficientPointsError(
                    company.points_balance, points, "Insufficient company points balance"
                )
            sender_remaining = company.points_balance - points
            funded_by = "company_balance"
        else:
            budget = await self.monthly_budget(sender.id, sender.company_id, now.date())
            if budget.remaining < points:
                raise InsufficientPointsError(
                    budget.remaining, points, "Insufficient monthly points"
                )
            sender_remaining = budget.remaining - points
            funded_by = "monthly_allowance"

        transaction = PointTransaction(
            id=uuid4(),
            company_id=sender.company_id,
            sender_profile_id=sender.id,
            recipient_profile_id=recipient.id,
            points=points,
            transaction_type=PointTransactionType.RECOGNITION.value,
            description=description,
            created_by=actor.user_id,
            created_at=now,
        )
        recipient.points = recipient.points + points
        self.session.add(transaction)

        if company is not None:
            company.points_balance = sender_remaining
            self.session.add(
                CompanyPointTransaction(
                    company_id=company.id,
                    amount=points,
                    transaction_type=CompanyTransactionType.RECOGNITION_SPEND.value,
                    description=f"Recognition to {recipient.full_name}: {description}",
                    created_by=actor.user_id,
                )
            )

        try:
            await self.session.flush()

            verified = await self.session.get(PointTransaction, transaction.id)
            if verified is None:
                raise WriteVerificationError(f"Transaction {transaction.id} not found after insert")

            await self.session.commit()
        except (IntegrityError, WriteVerificationError):
            await self.session.rollback()
            metrics.record_points_operation("recognition", False)
            raise

        logger.info(
            "points_given",
            sender_id=str(sender.id),
            recipient_id=str(recipient.id),
            company_id=str(sender.company_id),
            points=points,
            funded_by=funded_by,
        )
        metrics.record_points_operation("recognition", True, points)

        return RecognitionResult(
            transaction_id=transaction.id,
            points=points,
            sender_remaining=sender_remaining,
            recipient_points=recipient.points,
            funded_by=funded_by,
        )

    async def monthly_budget(self, profile_id: UUID, company_id: UUID, day: date) -> MonthlyBudget:
        """Allocated, spent and remaining giving allowance for the month of ``day``."""
        start, end = _month_window(day)

        allocated_stmt = select(
            func.coalesce(func.sum(MonthlyPointsAllocation.points_allocated), 0)
        ).where(
            MonthlyPointsAllocation.profile_id == profile_id,
            MonthlyPointsAllocation.company_id == company_id,
            MonthlyPointsAllocation.allocation_month == month_start(day),
        )
        spent_stmt = select(func.coalesce(func.sum(PointTransaction.points), 0)).where(
            PointTransaction.sender_profile_id == profile_id,
            PointTransaction.transaction_type == PointTransactionType.RECOGNITION.value,
            PointTransaction.created_at >= start,
            PointTransaction.created_at < end,
        )

        allocated = (await self.session.execute(allocated_stmt)).scalar_one()
        spent = (await self.session.execute(spent_stmt)).scalar_one()

        return MonthlyBudget(
            allocation_month=month_start(day), allocated=int(allocated), spent=int(spent)
        )

    # ========================================================================
    # Reads
    # ========================================================================

    async def ledger_balance(self, profile_id: UUID) -> int:
        """Member balance derived purely from point_transactions."""
        credited_stmt = select(func.coalesce(func.sum(PointTransaction.points), 0)).where(
            PointTransaction.recipient_profile_id == profile_id
        )
        debited_stmt = select(func.coalesce(func.sum(PointTransaction.points), 0)).where(
            PointTransaction.sender_profile_id == profile_id,
            PointTransaction.transaction_type.in_(DEBIT_TYPES),
        )
        credited = (await self.session.execute(credited_stmt)).scalar_one()
        debited = (await self.session.execute(debited_stmt)).scalar_one()
        return int(credited) - int(debited)

    async def audit_member_balance(self, actor: AuthContext, member_id: UUID) -> BalanceAudit:
        """
        Compare a member's stored points with the ledger-derived balance.

        Raises:
            AuthorizationError: caller is not a platform admin
            MemberNotFoundError: member doesn't exist
        """
        self._require_platform_admin(actor)
        member = await self.session.get(Profile, member_id)
        if member is None:
            raise MemberNotFoundError(member_id)

        audit = BalanceAudit(
            member_id=member.id,
            stored_points=member.points,
            ledger_points=await self.ledger_balance(member.id),
        )
        if not audit.consistent:
            logger.warning(
                "member_balance_drift",
                member_id=str(member.id),
                stored_points=audit.stored_points,
                ledger_points=audit.ledger_points,
            )
        return audit

    async def history(
        self, profile_id: UUID, limit: int = 50, offset: int = 0
    ) -> tuple[list[PointTransaction], int]:
        """Transactions the member sent or received, newest first."""
        involves = or_(
            PointTransaction.sender_profile_id == profile_id,
            PointTransaction.recipient_profile_id == profile_id,
        )
        count_stmt = select(func.count()).select_from(PointTransaction).where(involves)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(PointTransaction)
            .where(involves)
            .order_by(desc(PointTransaction.created_at))
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all()), int(total)

    async def leaderboard(
        self, company_id: UUID, since: datetime | None = None, limit: int = 10
    ) -> list[LeaderboardRow]:
        """Members ranked by recognition points received."""
        received = func.coalesce(func.sum(PointTransaction.points), 0).label("points_received")
        join_on = and_(
            PointTransaction.recipient_profile_id == Profile.id,
            PointTransaction.transaction_type == PointTransactionType.RECOGNITION.value,
        )
        if since is not None:
            join_on = and_(join_on, PointTransaction.created_at >= since)

        stmt = (
            select(Profile.id, Profile.first_name, Profile.last_name, received)
            .outerjoin(PointTransaction, join_on)
            .where(
                Profile.company_id == company_id,
                Profile.status == MemberStatus.ACTIVE.value,
            )
            .group_by(Profile.id, Profile.first_name, Profile.last_name)
            .order_by(desc("points_received"), Profile.first_name)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [
            LeaderboardRow(
                profile_id=row.id,
                first_name=row.first_name,
                last_name=row.last_name,
                points_received=int(row.points_received),
            )
            for row in result.all()
        ]

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    @staticmethod
    def _require_platform_admin(actor: AuthContext) -> None:
        if not actor.is_platform_admin:
            logger.warning("platform_admin_required", user_id=str(actor.user_id))
            raise AuthorizationError("platform_admin")

    async def _commit_verified(
        self,
        audit_row: CompanyPointTransaction | PointTransaction,
        audit_model: type[CompanyPointTransaction] | type[PointTransaction],
        owner_model: type[Company] | type[Profile],
        owner_id: UUID,
        balance_attr: str,
        expected_balance: int,
    ) -> None:
        """
        Insert the audit row, verify both writes and commit them together.

        Any failure rolls back the balance change as well as the audit row.
        """
        self.session.add(audit_row)
        try:
            await self.session.flush()

            verified_row = await self.session.get(audit_model, audit_row.id)
            if verified_row is None:
                raise WriteVerificationError(f"Audit row {audit_row.id} not found after insert")

            verified_owner = await self.session.get(owner_model, owner_id)
            if verified_owner is None:
                raise WriteVerificationError(f"{owner_model.__name__} {owner_id} disappeared")

            actual = getattr(verified_owner, balance_attr)
            if actual != expected_balance:
                raise DataIntegrityError(
                    f"Balance mismatch: expected {expected_balance}, got {actual}"
                )

            await self.session.commit()
            metrics.db_write_verifications_total.labels(success="True").inc()
        except (IntegrityError, WriteVerificationError, DataIntegrityError) as exc:
            await self.session.rollback()
            metrics.db_write_verifications_total.labels(success="False").inc()
            logger.error(
                "points_write_rolled_back",
                owner=owner_model.__name__,
                owner_id=str(owner_id),
                error=str(exc),
            )
            raise

    async def _lock_company_for_update(self, company_id: UUID) -> Company | None:
        """Lock company row for update (SELECT FOR UPDATE)."""
        stmt = select(Company).where(Company.id == company_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_profile_for_update(self, profile_id: UUID) -> Profile | None:
        """Lock profile row for update (SELECT FOR UPDATE)."""
        stmt = select(Profile).where(Profile.id == profile_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_profiles_for_update(self, profile_ids: list[UUID]) -> dict[UUID, Profile]:
        stmt = (
            select(Profile)
            .where(Profile.id.in_(profile_ids))
            .order_by(Profile.id)
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return {profile.id: profile for profile in result.scalars().all()}
