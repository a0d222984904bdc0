#!/usr/bin/env python3
"""
Monthly Points Allocation - command line trigger.

Runs the same job as ``POST /v1/jobs/monthly-points-allocation`` directly
against the database, for cron hosts without access to the API.

Usage:
    # Allocate every company that is due today
    python3 scripts/run_monthly_allocation.py

    # Pretend today is a specific date (backfilling a missed run)
    python3 scripts/run_monthly_allocation.py --date 2026-03-15

    # Only report which companies are due, allocate nothing
    python3 scripts/run_monthly_allocation.py --dry-run
"""

import argparse
import asyncio
import sys
from datetime import UTC, date, datetime

from grattia.db.session import close_engines, get_write_session
from grattia.models.api import AllocationStatus
from grattia.observability import get_logger, setup_logging
from grattia.services.allocation import MonthlyAllocationService

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Grant monthly giving allowances")
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Run as if today were this date (YYYY-MM-DD)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List companies due for allocation without writing anything",
    )
    return parser.parse_args(argv)


def _as_of(day: date | None) -> datetime:
    if day is None:
        return datetime.now(UTC)
    return datetime(day.year, day.month, day.day, tzinfo=UTC)


async def dry_run(now: datetime) -> int:
    async with get_write_session() as session:
        service = MonthlyAllocationService(session)
        due = await service.due_companies(now.date())
    for company in due:
        logger.info(
            "allocation_due",
            company_id=str(company.company_id),
            company_name=company.name,
            points_per_member=company.team_member_monthly_limit,
        )
    logger.info("allocation_dry_run_complete", due_companies=len(due))
    return 0


async def run(now: datetime) -> int:
    """Run the job; exit status 1 when any company failed."""
    async with get_write_session() as session:
        result = await MonthlyAllocationService(session).run(now=now)

    failures = [r for r in result.results if r.status == AllocationStatus.ERROR]
    for failure in failures:
        logger.error(
            "company_allocation_failed",
            company_id=str(failure.company_id),
            company_name=failure.company_name,
            error=failure.error,
        )
    logger.info(
        "allocation_summary",
        total_companies_processed=result.total_companies_processed,
        total_allocations=result.total_allocations,
        failed=len(failures),
    )
    return 1 if failures else 0


async def _main(args: argparse.Namespace) -> int:
    now = _as_of(args.date)
    try:
        if args.dry_run:
            return await dry_run(now)
        return await run(now)
    finally:
        await close_engines()


def main(argv: list[str] | None = None) -> None:
    setup_logging()
    args = parse_args(argv)
    sys.exit(asyncio.run(_main(args)))


if __name__ == "__main__":
    main()
