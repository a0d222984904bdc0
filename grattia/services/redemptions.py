"""
Redemption Service - Members spend earned points on catalog rewards.

A redemption deducts points, decrements stock and writes a ledger row in one
transaction. Fulfilment status only moves forward; cancelling before the
reward ships refunds the points.
"""

from uuid import UUID, uuid4

from sqlalchemy import desc, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from grattia.db.models import PointTransaction, Profile, Redemption, Reward
from grattia.exceptions import (
    AuthorizationError,
    DataIntegrityError,
    InsufficientPointsError,
    InvalidStatusTransitionError,
    MemberNotFoundError,
    OutOfStockError,
    RedemptionNotFoundError,
    RewardNotFoundError,
    WriteVerificationError,
)
from grattia.models.api import PointTransactionType, RedemptionStatus
from grattia.models.domain import AuthContext
from grattia.observability.metrics import metrics

logger = get_logger(__name__)

FULFILMENT_ORDER = (
    RedemptionStatus.PENDING,
    RedemptionStatus.PROCESSING,
    RedemptionStatus.SHIPPED,
    RedemptionStatus.DELIVERED,
)
CANCELLABLE = frozenset({RedemptionStatus.PENDING, RedemptionStatus.PROCESSING})


def can_transition(current: RedemptionStatus, target: RedemptionStatus) -> bool:
    """Forward moves along the fulfilment order, or cancel before shipping."""
    if target == RedemptionStatus.CANCELLED:
        return current in CANCELLABLE
    if current == RedemptionStatus.CANCELLED or current == target:
        return False
    return FULFILMENT_ORDER.index(target) > FULFILMENT_ORDER.index(current)


class RedemptionService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def redeem(self, actor: AuthContext, reward_id: UUID) -> Redemption:
        """
        Redeem a reward for the calling member.

        Raises:
            RewardNotFoundError: reward missing or not visible to the company
            OutOfStockError: reward has a stock of zero
            InsufficientPointsError: member cannot afford the reward
        """
        reward = await self._lock_reward_for_update(reward_id)
        if reward is None or reward.company_id not in (None, actor.company_id):
            raise RewardNotFoundError(reward_id)
        if reward.stock is not None and reward.stock <= 0:
            raise OutOfStockError(reward_id)

        member = await self._lock_profile_for_update(actor.profile_id)
        if member is None:
            raise MemberNotFoundError(actor.profile_id)
        if member.points < reward.points_cost:
            raise InsufficientPointsError(member.points, reward.points_cost)

        expected_points = member.points - reward.points_cost
        member.points = expected_points
        if reward.stock is not None:
            reward.stock = reward.stock - 1

        redemption = Redemption(
            id=uuid4(),
            profile_id=member.id,
            reward_id=reward.id,
            company_id=actor.company_id,
            points_spent=reward.points_cost,
            status=RedemptionStatus.PENDING.value,
        )
        self.session.add(redemption)
        self.session.add(
            PointTransaction(
                id=uuid4(),
                company_id=actor.company_id,
                sender_profile_id=member.id,
                recipient_profile_id=None,
                points=reward.points_cost,
                transaction_type=PointTransactionType.REDEMPTION.value,
                description=f"Redeemed: {reward.name}",
                created_by=actor.user_id,
            )
        )
        await self._commit_verified(redemption.id, member.id, expected_points)

        metrics.record_points_operation("redemption", True, reward.points_cost)
        logger.info(
            "reward_redeemed",
            redemption_id=str(redemption.id),
            reward_id=str(reward.id),
            profile_id=str(member.id),
            points_spent=reward.points_cost,
        )
        return redemption

    async def advance_status(
        self,
        actor: AuthContext,
        redemption_id: UUID,
        target: RedemptionStatus,
        external_order_id: str | None = None,
    ) -> Redemption:
        """
        Move a redemption along its fulfilment lifecycle.

        Cancelling refunds the points to the member and restores stock.

        Raises:
            AuthorizationError: caller is not a platform admin
            RedemptionNotFoundError: redemption doesn't exist
            InvalidStatusTransitionError: move is backwards or out of a terminal state
        """
        if not actor.is_platform_admin:
            raise AuthorizationError("platform_admin")

        redemption = await self._lock_redemption_for_update(redemption_id)
        if redemption is None:
            raise RedemptionNotFoundError(redemption_id)

        current = RedemptionStatus(redemption.status)
        if not can_transition(current, target):
            raise InvalidStatusTransitionError(current.value, target.value)

        redemption.status = target.value
        if external_order_id is not None:
            redemption.external_order_id = external_order_id

        if target == RedemptionStatus.CANCELLED:
            await self._refund(actor, redemption)
        else:
            await self.session.commit()

        logger.info(
            "redemption_status_changed",
            redemption_id=str(redemption.id),
            previous_status=current.value,
            new_status=target.value,
        )
        return redemption

    async def list_for_member(self, profile_id: UUID, limit: int = 50) -> list[Redemption]:
        stmt = (
            select(Redemption)
            .where(Redemption.profile_id == profile_id)
            .order_by(desc(Redemption.created_at))
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_company(
        self, company_id: UUID, status: RedemptionStatus | None = None
    ) -> list[Redemption]:
        stmt = select(Redemption).where(Redemption.company_id == company_id)
        if status is not None:
            stmt = stmt.where(Redemption.status == status.value)
        result = await self.session.execute(stmt.order_by(desc(Redemption.created_at)))
        return list(result.scalars().all())

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _refund(self, actor: AuthContext, redemption: Redemption) -> None:
        member = await self._lock_profile_for_update(redemption.profile_id)
        if member is None:
            raise MemberNotFoundError(redemption.profile_id)

        reward = await self.session.get(Reward, redemption.reward_id)
        if reward is not None and reward.stock is not None:
            reward.stock = reward.stock + 1

        expected_points = member.points + redemption.points_spent
        member.points = expected_points
        self.session.add(
            PointTransaction(
                id=uuid4(),
                company_id=redemption.company_id,
                sender_profile_id=None,
                recipient_profile_id=member.id,
                points=redemption.points_spent,
                transaction_type=PointTransactionType.REDEMPTION_REFUND.value,
                description="Redemption cancelled, points refunded",
                created_by=actor.user_id,
            )
        )
        await self._commit_verified(redemption.id, member.id, expected_points)
        metrics.record_points_operation("redemption_refund", True, redemption.points_spent)

    async def _commit_verified(
        self, redemption_id: UUID, profile_id: UUID, expected_points: int
    ) -> None:
        try:
            await self.session.flush()
            if await self.session.get(Redemption, redemption_id) is None:
                raise WriteVerificationError(f"Redemption {redemption_id} not found after write")
            member = await self.session.get(Profile, profile_id)
            if member is None or member.points != expected_points:
                actual = None if member is None else member.points
                raise DataIntegrityError(
                    f"Balance mismatch: expected {expected_points}, got {actual}"
                )
            await self.session.commit()
            metrics.db_write_verifications_total.labels(success="True").inc()
        except (IntegrityError, WriteVerificationError, DataIntegrityError) as exc:
            await self.session.rollback()
            metrics.db_write_verifications_total.labels(success="False").inc()
            logger.error(
                "redemption_write_rolled_back", redemption_id=str(redemption_id), error=str(exc)
            )
            raise

    async def _lock_reward_for_update(self, reward_id: UUID) -> Reward | None:
        stmt = select(Reward).where(Reward.id == reward_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_profile_for_update(self, profile_id: UUID) -> Profile | None:
        stmt = select(Profile).where(Profile.id == profile_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_redemption_for_update(self, redemption_id: UUID) -> Redemption | None:
        stmt = select(Redemption).where(Redemption.id == redemption_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
