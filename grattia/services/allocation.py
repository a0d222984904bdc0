"""
Monthly Points Allocation - Batch job granting monthly giving allowances.

For every subscribed company whose allocation day has arrived this month and
which has not been allocated yet, each active member receives one
monthly_points_allocations row worth the company's team_member_monthly_limit.
A monthly_allocation_runs row committed alongside marks the company's month as
done, so companies with no active members are skipped on later runs too.
A failure for one company is recorded and the run moves on to the next.
"""

import calendar
import time
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from uuid import UUID

from sqlalchemy import exists, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from grattia.db.models import Company, MonthlyAllocationRun, MonthlyPointsAllocation, Profile
from grattia.exceptions import GrattiaError
from grattia.models.api import AllocationStatus, MemberStatus
from grattia.observability.metrics import metrics
from grattia.observability.tracing import trace_operation
from grattia.services.ledger import month_start

logger = get_logger(__name__)

SKIP_REASON = "Not billing day or already allocated this month"


def allocation_day(anchor: datetime | None, day: date) -> int:
    """
    Day of ``day``'s month on which the company is allocated.

    The billing anchor's day-of-month, clamped to the month's last day so an
    anchor on the 31st still allocates in shorter months. No anchor means the 1st.
    """
    if anchor is None:
        return 1
    last_day = calendar.monthrange(day.year, day.month)[1]
    return min(anchor.day, last_day)


@dataclass(frozen=True)
class CompanySchedule:
    """Columns the job needs from a company, detached from the session."""

    company_id: UUID
    name: str
    billing_cycle_anchor: datetime | None
    team_member_monthly_limit: int


@dataclass(frozen=True)
class CompanyAllocationOutcome:
    company_id: UUID
    company_name: str
    status: AllocationStatus
    allocations: int = 0
    reason: str | None = None
    error: str | None = None


@dataclass
class AllocationRun:
    """Aggregated result of one job invocation."""

    timestamp: datetime
    results: list[CompanyAllocationOutcome] = field(default_factory=list)

    @property
    def total_companies_processed(self) -> int:
        return len(self.results)

    @property
    def total_allocations(self) -> int:
        return sum(r.allocations for r in self.results)


class MonthlyAllocationService:
    """Runs the monthly allocation across all subscribed companies."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def run(self, now: datetime | None = None) -> AllocationRun:
        """
        Allocate every company that is due.

        Safe to invoke repeatedly: companies already allocated this month are
        reported as skipped.
        """
        now = now or datetime.now(UTC)
        today = now.date()
        started = time.perf_counter()
        run = AllocationRun(timestamp=now)

        companies = await self._find_subscribed_companies()
        logger.info("monthly_allocation_started", company_count=len(companies), day=str(today))

        for company in companies:
            with trace_operation(
                "monthly_allocation_company", company_id=company.company_id
            ) as span:
                outcome = await self._process_company(company, today, now)
                span.set_attribute("allocation.status", outcome.status.value)
            run.results.append(outcome)
            metrics.record_allocation_result(outcome.status.value, outcome.allocations)

        metrics.allocation_run_duration_seconds.observe(time.perf_counter() - started)
        logger.info(
            "monthly_allocation_completed",
            total_companies_processed=run.total_companies_processed,
            total_allocations=run.total_allocations,
        )
        return run

    async def due_companies(self, today: date) -> list[CompanySchedule]:
        """Subscribed companies that ``run`` would allocate on ``today``."""
        return [
            company
            for company in await self._find_subscribed_companies()
            if await self.should_allocate(company, today)
        ]

    async def should_allocate(self, company: CompanySchedule, today: date) -> bool:
        """Whether ``company`` is due for allocation on ``today``."""
        if today.day < allocation_day(company.billing_cycle_anchor, today):
            return False
        return not await self._already_allocated(company.company_id, month_start(today))

    async def allocate(self, company: CompanySchedule, today: date, now: datetime) -> int:
        """
        Insert this month's allocation rows and commit.

        Returns the number of members allocated.
        """
        member_ids = await self._find_active_member_ids(company.company_id)
        month = month_start(today)
        self.session.add(
            MonthlyAllocationRun(
                company_id=company.company_id,
                allocation_month=month,
                member_count=len(member_ids),
                points_per_member=company.team_member_monthly_limit,
                completed_at=now,
            )
        )
        for member_id in member_ids:
            self.session.add(
                MonthlyPointsAllocation(
                    company_id=company.company_id,
                    profile_id=member_id,
                    allocation_month=month,
                    points_allocated=company.team_member_monthly_limit,
                    allocation_date=now,
                )
            )
        await self.session.flush()
        await self.session.commit()
        return len(member_ids)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _process_company(
        self, company: CompanySchedule, today: date, now: datetime
    ) -> CompanyAllocationOutcome:
        try:
            if not await self.should_allocate(company, today):
                logger.info(
                    "monthly_allocation_company_skipped", company_id=str(company.company_id)
                )
                return CompanyAllocationOutcome(
                    company_id=company.company_id,
                    company_name=company.name,
                    status=AllocationStatus.SKIPPED,
                    reason=SKIP_REASON,
                )

            allocated = await self.allocate(company, today, now)
            logger.info(
                "monthly_allocation_company_allocated",
                company_id=str(company.company_id),
                allocations=allocated,
                points_each=company.team_member_monthly_limit,
            )
            return CompanyAllocationOutcome(
                company_id=company.company_id,
                company_name=company.name,
                status=AllocationStatus.SUCCESS,
                allocations=allocated,
            )
        except (SQLAlchemyError, GrattiaError) as exc:
            # A concurrent run that already recorded this month lands here
            # through the unique constraint.
            await self.session.rollback()
            logger.error(
                "monthly_allocation_company_failed",
                company_id=str(company.company_id),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            metrics.record_error(type(exc).__name__, "monthly_allocation")
            return CompanyAllocationOutcome(
                company_id=company.company_id,
                company_name=company.name,
                status=AllocationStatus.ERROR,
                error=str(exc),
            )

    async def _find_subscribed_companies(self) -> list[CompanySchedule]:
        # Plain rows so a per-company rollback cannot expire the remaining work
        stmt = (
            select(
                Company.id,
                Company.name,
                Company.billing_cycle_anchor,
                Company.team_member_monthly_limit,
            )
            .where(Company.stripe_subscription_id.isnot(None))
            .order_by(Company.created_at)
        )
        result = await self.session.execute(stmt)
        return [
            CompanySchedule(
                company_id=row.id,
                name=row.name,
                billing_cycle_anchor=row.billing_cycle_anchor,
                team_member_monthly_limit=row.team_member_monthly_limit,
            )
            for row in result.all()
        ]

    async def _already_allocated(self, company_id: UUID, month: date) -> bool:
        stmt = select(
            exists().where(
                MonthlyAllocationRun.company_id == company_id,
                MonthlyAllocationRun.allocation_month == month,
            )
        )
        result = await self.session.execute(stmt)
        return bool(result.scalar())

    async def _find_active_member_ids(self, company_id: UUID) -> list[UUID]:
        stmt = select(Profile.id).where(
            Profile.company_id == company_id,
            Profile.status == MemberStatus.ACTIVE.value,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
