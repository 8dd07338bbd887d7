"""
Assessment Engine — half-yearly manager range assessment.

Batch flow for one period:
  1. Load the range catalog and every ACTIVE manager holding a range
  2. Skip members inside an assessment exemption window
  3. Per manager (bounded concurrency): skip if already assessed, look up
     period sales, decide PROMOTE / MAINTAIN / DEMOTE_CANDIDATE
  4. Persist one PENDING assessment per manager, each in its own transaction

Execution only proposes. User ranks change through ranks.workflow.

Decision precedence (single-step only):
  - sales >= promotion threshold of range n+1       → PROMOTE to n+1
  - sales <  maintenance threshold of range n       → DEMOTE_CANDIDATE to n-1
    (at the lowest range this degrades to MAINTAIN)
  - otherwise                                       → MAINTAIN
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models import ManagerAssessment, User
from ranks.catalog import RangeCatalog, load_catalog
from ranks.errors import Conflict, DependencyFailure, InvalidArgument, RankEngineError
from ranks.periods import AssessmentPeriod
from ranks.results import OperationResult
from ranks.sales import SalesAggregator

logger = structlog.get_logger()


class Outcome(str, Enum):
    PROMOTE = "PROMOTE"
    MAINTAIN = "MAINTAIN"
    DEMOTE_CANDIDATE = "DEMOTE_CANDIDATE"


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    current_range_number: int
    target_range_number: int


def decide_outcome(period_sales: int, current_range_number: int, catalog: RangeCatalog) -> Decision:
    current = catalog.get(current_range_number)

    above = catalog.next_above(current.range_number)
    if above is not None and period_sales >= above.promotion_threshold:
        return Decision(Outcome.PROMOTE, current.range_number, above.range_number)

    if period_sales < current.maintenance_threshold:
        below = catalog.previous_below(current.range_number)
        if below is not None:
            return Decision(Outcome.DEMOTE_CANDIDATE, current.range_number, below.range_number)

    return Decision(Outcome.MAINTAIN, current.range_number, current.range_number)


@dataclass
class AssessmentRunSummary:
    period: AssessmentPeriod
    executed_by: str
    processed: int = 0
    promoted: int = 0
    maintained: int = 0
    demotion_candidates: int = 0
    skipped: int = 0
    exempt: int = 0
    errors: int = 0
    timed_out: bool = False
    results: list[dict[str, Any]] = field(default_factory=list)

    def record(self, row: dict[str, Any]) -> None:
        self.results.append(row)
        status = row["status"]
        if status == "assessed":
            self.processed += 1
            outcome = row["outcome"]
            if outcome == Outcome.PROMOTE.value:
                self.promoted += 1
            elif outcome == Outcome.DEMOTE_CANDIDATE.value:
                self.demotion_candidates += 1
            else:
                self.maintained += 1
        elif status == "skipped":
            self.skipped += 1
        elif status == "exempt":
            self.exempt += 1
        elif status == "error":
            self.errors += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period.to_dict(),
            "executed_by": self.executed_by,
            "processed": self.processed,
            "promoted": self.promoted,
            "maintained": self.maintained,
            "demotion_candidates": self.demotion_candidates,
            "skipped": self.skipped,
            "exempt": self.exempt,
            "errors": self.errors,
            "timed_out": self.timed_out,
            "results": self.results,
        }


@dataclass(frozen=True)
class _Manager:
    user_id: uuid.UUID
    name: str
    range_number: int
    exempt_until: datetime | None


async def _load_assessable_managers(db: AsyncSession) -> list[_Manager]:
    result = await db.execute(
        select(User)
        .where(
            User.role == "MANAGER",
            User.membership_status == "ACTIVE",
            User.current_range_number.is_not(None),
        )
        .order_by(User.created_at)
    )
    return [
        _Manager(
            user_id=u.user_id,
            name=u.name,
            range_number=u.current_range_number,
            exempt_until=u.assessment_exempt_until,
        )
        for u in result.scalars().all()
    ]


async def _already_assessed(db: AsyncSession, user_id: uuid.UUID, period: AssessmentPeriod) -> bool:
    result = await db.execute(
        select(ManagerAssessment.assessment_id).where(
            ManagerAssessment.user_id == user_id,
            ManagerAssessment.period_year == period.year,
            ManagerAssessment.period_half == period.half,
        )
    )
    return result.first() is not None


async def _insert_assessment(
    session_factory: async_sessionmaker[AsyncSession],
    manager: _Manager,
    period: AssessmentPeriod,
    period_sales: int,
    decision: Decision,
    executed_by: str,
    executed_at: datetime,
) -> uuid.UUID:
    """One transaction per manager. A unique violation means another run got there first."""
    assessment = ManagerAssessment(
        user_id=manager.user_id,
        period_year=period.year,
        period_half=period.half,
        period_sales=period_sales,
        range_at_execution=decision.current_range_number,
        proposed_range_number=decision.target_range_number,
        outcome=decision.outcome.value,
        status="PENDING",
        executed_by=executed_by,
        executed_at=executed_at,
    )
    async with session_factory() as db:
        db.add(assessment)
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            raise Conflict("Assessment already exists for this period", user_id=str(manager.user_id)) from exc
    return assessment.assessment_id


async def _assess_one(
    session_factory: async_sessionmaker[AsyncSession],
    manager: _Manager,
    *,
    period: AssessmentPeriod,
    catalog: RangeCatalog,
    sales: SalesAggregator,
    executed_by: str,
    now: datetime,
) -> dict[str, Any]:
    row: dict[str, Any] = {"user_id": str(manager.user_id), "name": manager.name}

    if manager.exempt_until is not None and manager.exempt_until > now:
        return {**row, "status": "exempt", "exempt_until": manager.exempt_until.isoformat()}

    async with session_factory() as db:
        if await _already_assessed(db, manager.user_id, period):
            return {**row, "status": "skipped", "reason": "already_assessed"}

    period_sales = int(await sales.total_sales(manager.user_id, period.start_date, period.end_date))
    decision = decide_outcome(period_sales, manager.range_number, catalog)

    try:
        assessment_id = await _insert_assessment(
            session_factory, manager, period, period_sales, decision, executed_by, now
        )
    except Conflict:
        logger.info(
            "assessment.duplicate_skipped",
            user_id=str(manager.user_id),
            period=period.label,
        )
        return {**row, "status": "skipped", "reason": "already_assessed"}

    return {
        **row,
        "status": "assessed",
        "assessment_id": str(assessment_id),
        "period_sales": period_sales,
        "outcome": decision.outcome.value,
        "range_at_execution": decision.current_range_number,
        "proposed_range_number": decision.target_range_number,
    }


async def execute_assessment(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    period: AssessmentPeriod,
    executed_by: str,
    sales: SalesAggregator,
    now: datetime,
    max_workers: int = 8,
    timeout_seconds: float | None = None,
) -> AssessmentRunSummary:
    """
    Assess every eligible manager for ``period``.

    Re-running for the same period is a no-op for managers already assessed.
    Per-manager failures are logged and counted; they never abort the batch.
    On timeout the unfinished managers are cancelled while committed
    assessments stay in place.
    """
    if not isinstance(period, AssessmentPeriod):
        raise InvalidArgument("An assessment period is required")
    if not executed_by:
        raise InvalidArgument("executed_by is required")
    if max_workers < 1:
        raise InvalidArgument("max_workers must be at least 1", max_workers=max_workers)

    summary = AssessmentRunSummary(period=period, executed_by=executed_by)

    try:
        async with session_factory() as db:
            catalog = await load_catalog(db)
            managers = await _load_assessable_managers(db)
    except SQLAlchemyError as exc:
        logger.error("assessment.load_failed", period=period.label, error=str(exc), exc_info=True)
        raise DependencyFailure("Assessment data is currently unavailable") from exc

    logger.info(
        "assessment.batch_started",
        period=period.label,
        executed_by=executed_by,
        manager_count=len(managers),
        max_workers=max_workers,
    )

    semaphore = asyncio.Semaphore(max_workers)

    async def _guarded(manager: _Manager) -> None:
        async with semaphore:
            try:
                row = await _assess_one(
                    session_factory,
                    manager,
                    period=period,
                    catalog=catalog,
                    sales=sales,
                    executed_by=executed_by,
                    now=now,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "assessment.user_failed",
                    user_id=str(manager.user_id),
                    period=period.label,
                    error=str(exc),
                    exc_info=True,
                )
                code = exc.code if isinstance(exc, RankEngineError) else "dependency_failure"
                row = {
                    "user_id": str(manager.user_id),
                    "name": manager.name,
                    "status": "error",
                    "code": code,
                }
            summary.record(row)

    tasks = [asyncio.ensure_future(_guarded(m)) for m in managers]
    if tasks:
        try:
            _, pending = await asyncio.wait(tasks, timeout=timeout_seconds)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        if pending:
            summary.timed_out = True
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "assessment.batch_timed_out",
                period=period.label,
                unfinished=len(pending),
                timeout_seconds=timeout_seconds,
            )

    logger.info(
        "assessment.batch_completed",
        period=period.label,
        processed=summary.processed,
        promoted=summary.promoted,
        maintained=summary.maintained,
        demotion_candidates=summary.demotion_candidates,
        skipped=summary.skipped,
        exempt=summary.exempt,
        errors=summary.errors,
        timed_out=summary.timed_out,
    )
    return summary


async def run_assessment(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    period: AssessmentPeriod,
    executed_by: str,
    sales: SalesAggregator,
    now: datetime,
    max_workers: int = 8,
    timeout_seconds: float | None = None,
) -> OperationResult:
    """executeAssessment as an outward operation: structured result, no raising for business rules."""
    try:
        summary = await execute_assessment(
            session_factory,
            period=period,
            executed_by=executed_by,
            sales=sales,
            now=now,
            max_workers=max_workers,
            timeout_seconds=timeout_seconds,
        )
    except RankEngineError as exc:
        logger.warning("assessment.batch_rejected", code=exc.code, error=exc.message)
        return OperationResult.failed(exc)

    message = (
        f"Assessment for {period.label} finished: {summary.processed} assessed "
        f"({summary.promoted} promotion, {summary.maintained} maintain, "
        f"{summary.demotion_candidates} demotion candidates), "
        f"{summary.skipped} already assessed, {summary.exempt} exempt, {summary.errors} errors"
    )
    if summary.timed_out:
        message += "; run timed out before every manager was processed"
    return OperationResult(success=not summary.timed_out, message=message, payload=summary.to_dict())
