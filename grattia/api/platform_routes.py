"""
Platform Routes - Operator endpoints and scheduled jobs.

Points adjustments and redemption fulfilment require a platform admin; the
monthly allocation job is called by the scheduler with a shared secret.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from grattia.api.dependencies import require_platform_admin, require_scheduler
from grattia.api.errors import to_http_exception
from grattia.api.routes import redemption_response
from grattia.db.session import get_write_db
from grattia.exceptions import GrattiaError
from grattia.models.api import (
    AdvanceRedemptionRequest,
    BalanceAuditResponse,
    CompanyAllocationResult,
    CompanyPointsAdjustmentRequest,
    CompanyPointsAdjustmentResponse,
    MemberPointsAdjustmentRequest,
    MemberPointsAdjustmentResponse,
    MonthlyAllocationResponse,
    RedemptionResponse,
    RedemptionStatus,
)
from grattia.models.domain import AuthContext, PointsAdjustmentIntent
from grattia.services.allocation import MonthlyAllocationService
from grattia.services.ledger import PointsLedgerService
from grattia.services.redemptions import RedemptionService

router = APIRouter(tags=["platform"])


@router.post("/v1/platform/company-points", response_model=CompanyPointsAdjustmentResponse)
async def adjust_company_points(
    request: CompanyPointsAdjustmentRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: AuthContext = Depends(require_platform_admin),
) -> CompanyPointsAdjustmentResponse:
    """Grant or remove points on a company balance."""
    intent = PointsAdjustmentIntent(
        company_id=request.company_id,
        amount=request.amount,
        operation=request.operation,
        description=request.description,
    )
    try:
        result = await PointsLedgerService(db).adjust_company_points(actor, intent)
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc

    return CompanyPointsAdjustmentResponse(
        operation=result.operation,
        amount=result.amount,
        previous_balance=result.change.previous,
        new_balance=result.change.new,
        company_name=result.company_name,
    )


@router.post("/v1/platform/member-points", response_model=MemberPointsAdjustmentResponse)
async def adjust_member_points(
    request: MemberPointsAdjustmentRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: AuthContext = Depends(require_platform_admin),
) -> MemberPointsAdjustmentResponse:
    """Grant or remove points on a member balance."""
    intent = PointsAdjustmentIntent(
        company_id=request.company_id,
        amount=request.amount,
        operation=request.operation,
        description=request.description,
        member_id=request.member_id,
    )
    try:
        result = await PointsLedgerService(db).adjust_member_points(actor, intent)
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc

    return MemberPointsAdjustmentResponse(
        member_id=result.member_id,
        operation=result.operation,
        previous_points=result.change.previous,
        points_change=result.change.delta,
        new_points=result.change.new,
        description=result.description,
    )


@router.get(
    "/v1/platform/members/{member_id}/balance-audit",
    response_model=BalanceAuditResponse,
)
async def audit_member_balance(
    member_id: UUID,
    db: AsyncSession = Depends(get_write_db),
    actor: AuthContext = Depends(require_platform_admin),
) -> BalanceAuditResponse:
    """Compare a member's stored points with the ledger."""
    try:
        audit = await PointsLedgerService(db).audit_member_balance(actor, member_id)
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return BalanceAuditResponse(
        member_id=audit.member_id,
        stored_points=audit.stored_points,
        ledger_points=audit.ledger_points,
        consistent=audit.consistent,
    )


@router.get(
    "/v1/platform/companies/{company_id}/redemptions",
    response_model=list[RedemptionResponse],
)
async def list_company_redemptions(
    company_id: UUID,
    redemption_status: RedemptionStatus | None = Query(None, alias="status"),
    db: AsyncSession = Depends(get_write_db),
    actor: AuthContext = Depends(require_platform_admin),
) -> list[RedemptionResponse]:
    redemptions = await RedemptionService(db).list_for_company(company_id, redemption_status)
    return [redemption_response(r) for r in redemptions]


@router.post(
    "/v1/platform/redemptions/{redemption_id}/status",
    response_model=RedemptionResponse,
)
async def advance_redemption(
    redemption_id: UUID,
    request: AdvanceRedemptionRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: AuthContext = Depends(require_platform_admin),
) -> RedemptionResponse:
    """Move a redemption forward, or cancel it with a refund before it ships."""
    try:
        redemption = await RedemptionService(db).advance_status(
            actor, redemption_id, request.status, request.external_order_id
        )
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return redemption_response(redemption)


@router.post(
    "/v1/jobs/monthly-points-allocation",
    response_model=MonthlyAllocationResponse,
    dependencies=[Depends(require_scheduler)],
)
async def run_monthly_allocation(
    db: AsyncSession = Depends(get_write_db),
) -> MonthlyAllocationResponse:
    """
    Allocate this month's giving allowance to every due company.

    Idempotent within a month: a second call reports each company as skipped.
    """
    run = await MonthlyAllocationService(db).run()
    return MonthlyAllocationResponse(
        total_companies_processed=run.total_companies_processed,
        total_allocations=run.total_allocations,
        results=[
            CompanyAllocationResult(
                company_id=outcome.company_id,
                company_name=outcome.company_name,
                status=outcome.status,
                allocations=outcome.allocations,
                reason=outcome.reason,
                error=outcome.error,
            )
            for outcome in run.results
        ],
        timestamp=run.timestamp,
    )
