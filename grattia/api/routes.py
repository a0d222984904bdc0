"""
API Routes - FastAPI endpoints for recognition, rewards and members.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from grattia.api.dependencies import (
    get_auth_context,
    get_catalog_service,
    get_goody_client,
    get_members_service,
    require_company_admin,
)
from grattia.api.errors import to_http_exception
from grattia.db.models import PointTransaction, Profile, Redemption, Reward
from grattia.db.session import get_read_db, get_write_db
from grattia.exceptions import GrattiaError, InsufficientPointsError
from grattia.models.api import (
    CatalogPageResponse,
    CatalogProductResponse,
    GivePointsRequest,
    GivePointsResponse,
    ImportRewardRequest,
    InviteMemberRequest,
    LeaderboardEntry,
    LeaderboardResponse,
    MemberResponse,
    MonthlyBudgetResponse,
    MonthlyLimitRequest,
    MonthlyLimitResponse,
    PointHistoryResponse,
    PointTransactionResponse,
    PointTransactionType,
    RedeemRequest,
    RedemptionResponse,
    RedemptionStatus,
    RemoveMemberResponse,
    RewardListResponse,
    RewardResponse,
    RewardSource,
)
from grattia.models.domain import AuthContext
from grattia.services.catalog import GoodyCatalogClient, RewardCatalogService
from grattia.services.ledger import PointsLedgerService
from grattia.services.members import MembersService
from grattia.services.redemptions import RedemptionService

router = APIRouter()


def _reward_response(reward: Reward) -> RewardResponse:
    return RewardResponse(
        id=reward.id,
        company_id=reward.company_id,
        name=reward.name,
        description=reward.description,
        points_cost=reward.points_cost,
        source=RewardSource(reward.source),
        external_id=reward.external_id,
        image_url=reward.image_url,
        brand_name=reward.brand_name,
        stock=reward.stock,
    )


def _member_response(profile: Profile) -> MemberResponse:
    return MemberResponse(
        id=profile.id,
        company_id=profile.company_id,
        email=profile.email,
        first_name=profile.first_name,
        last_name=profile.last_name,
        points=profile.points,
        is_admin=profile.is_admin,
        status=profile.status,
        first_login_at=profile.first_login_at,
    )


def redemption_response(redemption: Redemption) -> RedemptionResponse:
    return RedemptionResponse(
        id=redemption.id,
        profile_id=redemption.profile_id,
        reward_id=redemption.reward_id,
        points_spent=redemption.points_spent,
        status=RedemptionStatus(redemption.status),
        external_order_id=redemption.external_order_id,
        created_at=redemption.created_at,
    )


def _transaction_response(row: PointTransaction) -> PointTransactionResponse:
    return PointTransactionResponse(
        id=row.id,
        sender_profile_id=row.sender_profile_id,
        recipient_profile_id=row.recipient_profile_id,
        points=row.points,
        transaction_type=PointTransactionType(row.transaction_type),
        description=row.description,
        created_at=row.created_at,
    )


# ============================================================================
# Recognition
# ============================================================================


@router.post(
    "/v1/points/give",
    response_model=GivePointsResponse,
    status_code=status.HTTP_201_CREATED,
)
async def give_points(
    request: GivePointsRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: AuthContext = Depends(get_auth_context),
) -> GivePointsResponse:
    """
    Recognise a colleague.

    Company admins spend the company balance; other members spend their
    monthly allowance.
    """
    service = PointsLedgerService(db)
    try:
        result = await service.give_points(
            actor, request.recipient_id, request.points, request.description
        )
    except InsufficientPointsError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Insufficient points. Available: {exc.balance}",
        ) from exc
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc

    return GivePointsResponse(
        transaction_id=result.transaction_id,
        points=result.points,
        sender_remaining=result.sender_remaining,
        recipient_points=result.recipient_points,
        funded_by=result.funded_by,
    )


@router.get("/v1/points/monthly-budget", response_model=MonthlyBudgetResponse)
async def get_monthly_budget(
    db: AsyncSession = Depends(get_read_db),
    actor: AuthContext = Depends(get_auth_context),
) -> MonthlyBudgetResponse:
    """Caller's allowance for the current month."""
    budget = await PointsLedgerService(db).monthly_budget(
        actor.profile_id, actor.company_id, datetime.now(UTC).date()
    )
    return MonthlyBudgetResponse(
        allocation_month=budget.allocation_month.isoformat(),
        allocated=budget.allocated,
        spent=budget.spent,
        remaining=budget.remaining,
    )


@router.get("/v1/points/history", response_model=PointHistoryResponse)
async def get_point_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_read_db),
    actor: AuthContext = Depends(get_auth_context),
) -> PointHistoryResponse:
    rows, total = await PointsLedgerService(db).history(actor.profile_id, limit, offset)
    return PointHistoryResponse(
        transactions=[_transaction_response(row) for row in rows],
        total_count=total,
    )


@router.get("/v1/points/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(
    days: int | None = Query(None, ge=1, le=366, description="Only count the last N days"),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_read_db),
    actor: AuthContext = Depends(get_auth_context),
) -> LeaderboardResponse:
    since = datetime.now(UTC) - timedelta(days=days) if days else None
    rows = await PointsLedgerService(db).leaderboard(actor.company_id, since, limit)
    return LeaderboardResponse(
        entries=[
            LeaderboardEntry(
                profile_id=row.profile_id,
                first_name=row.first_name,
                last_name=row.last_name,
                points_received=row.points_received,
            )
            for row in rows
        ]
    )


# ============================================================================
# Rewards & Catalog
# ============================================================================


@router.get("/v1/rewards", response_model=RewardListResponse)
async def list_rewards(
    actor: AuthContext = Depends(get_auth_context),
    catalog: RewardCatalogService = Depends(get_catalog_service),
) -> RewardListResponse:
    """Company rewards plus global rewards."""
    rewards = await catalog.list_rewards(actor.company_id)
    return RewardListResponse(rewards=[_reward_response(r) for r in rewards])


@router.post(
    "/v1/rewards/import",
    response_model=RewardResponse,
    status_code=status.HTTP_201_CREATED,
)
async def import_reward(
    request: ImportRewardRequest,
    actor: AuthContext = Depends(require_company_admin),
    catalog: RewardCatalogService = Depends(get_catalog_service),
) -> RewardResponse:
    """
    Import a Goody or Rye product as a reward.

    points_cost is fixed at import time from the product price and the
    multiplier. Global rewards can only be imported by platform admins.
    """
    if request.global_reward and not actor.is_platform_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Platform admin role required for global rewards",
        )

    try:
        reward = await catalog.import_product(
            source=request.source,
            reference=request.reference,
            multiplier=request.multiplier,
            company_id=None if request.global_reward else actor.company_id,
            created_by=actor.user_id,
            stock=request.stock,
        )
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return _reward_response(reward)


@router.delete("/v1/rewards/{reward_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_reward(
    reward_id: UUID,
    actor: AuthContext = Depends(require_company_admin),
    catalog: RewardCatalogService = Depends(get_catalog_service),
) -> None:
    try:
        await catalog.delete_reward(actor.company_id, reward_id)
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc


@router.get("/v1/catalog/goody", response_model=CatalogPageResponse)
async def browse_goody_catalog(
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    gift_cards_only: bool = Query(False),
    actor: AuthContext = Depends(require_company_admin),
    goody: GoodyCatalogClient = Depends(get_goody_client),
) -> CatalogPageResponse:
    """One page of the Goody catalog, for admins choosing what to import."""
    try:
        products = await goody.list_products(page=page, per_page=per_page)
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc

    if gift_cards_only:
        products = [p for p in products if p.is_gift_card]
    return CatalogPageResponse(
        products=[
            CatalogProductResponse(
                external_id=p.external_id,
                name=p.name,
                brand_name=p.brand_name,
                price_minor=p.price_minor,
                image_url=p.image_url,
                is_gift_card=p.is_gift_card,
            )
            for p in products
        ],
        page=page,
        per_page=per_page,
    )


# ============================================================================
# Redemptions
# ============================================================================


@router.post(
    "/v1/redemptions",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def redeem_reward(
    request: RedeemRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: AuthContext = Depends(get_auth_context),
) -> RedemptionResponse:
    try:
        redemption = await RedemptionService(db).redeem(actor, request.reward_id)
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return redemption_response(redemption)


@router.get("/v1/redemptions", response_model=list[RedemptionResponse])
async def list_my_redemptions(
    db: AsyncSession = Depends(get_read_db),
    actor: AuthContext = Depends(get_auth_context),
) -> list[RedemptionResponse]:
    redemptions = await RedemptionService(db).list_for_member(actor.profile_id)
    return [redemption_response(r) for r in redemptions]


# ============================================================================
# Members & Company
# ============================================================================


@router.get("/v1/members", response_model=list[MemberResponse])
async def list_members(
    actor: AuthContext = Depends(require_company_admin),
    members: MembersService = Depends(get_members_service),
) -> list[MemberResponse]:
    return [_member_response(p) for p in await members.list_members(actor.company_id)]


@router.post(
    "/v1/members/invite",
    response_model=MemberResponse,
    status_code=status.HTTP_201_CREATED,
)
async def invite_member(
    request: InviteMemberRequest,
    actor: AuthContext = Depends(require_company_admin),
    members: MembersService = Depends(get_members_service),
) -> MemberResponse:
    """Create an invited profile; the member becomes active on first login."""
    try:
        profile = await members.invite_member(
            actor,
            email=request.email,
            first_name=request.first_name,
            last_name=request.last_name,
            is_admin=request.is_admin,
            department=request.department,
        )
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return _member_response(profile)


@router.post("/v1/members/activate", response_model=MemberResponse)
async def activate_member(
    actor: AuthContext = Depends(get_auth_context),
    members: MembersService = Depends(get_members_service),
) -> MemberResponse:
    """
    First-login hook called by the client after sign-in.

    Activates an invited member and, once billing is set up, starts or
    resizes the company subscription.
    """
    try:
        profile = await members.activate_on_first_login(actor)
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return _member_response(profile)


@router.delete("/v1/members/{member_id}", response_model=RemoveMemberResponse)
async def remove_member(
    member_id: UUID,
    actor: AuthContext = Depends(require_company_admin),
    members: MembersService = Depends(get_members_service),
) -> RemoveMemberResponse:
    """Deactivate a member; their points return to the company balance."""
    try:
        result = await members.remove_member(actor, member_id)
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return RemoveMemberResponse(
        message="Member removed",
        points_returned=result.points_returned,
    )


@router.put("/v1/company/monthly-limit", response_model=MonthlyLimitResponse)
async def update_monthly_limit(
    request: MonthlyLimitRequest,
    actor: AuthContext = Depends(require_company_admin),
    members: MembersService = Depends(get_members_service),
) -> MonthlyLimitResponse:
    try:
        limit = await members.update_monthly_limit(actor, request.team_member_monthly_limit)
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return MonthlyLimitResponse(team_member_monthly_limit=limit)
