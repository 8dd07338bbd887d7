"""
Assessment Router — half-year manager assessment workflow.

The human-in-the-loop flow:
  1. Admin executes the batch for a period → PENDING assessments
  2. Reviewer confirms (optionally applying promotions) → CONFIRMED
  3. Reviewer explicitly demotes demotion candidates → DEMOTED
  4. Unreviewed proposals past retention → EXPIRED

Mutating endpoints return the engine's structured result; business-rule
failures map to 400/404/409 and storage trouble to 503.
"""

from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.deps import (
    get_clock,
    get_current_user,
    get_db,
    get_sales_aggregator,
    get_session_factory,
    require_admin,
)
from api.errors import unwrap
from core.config import get_settings
from db.models import ManagerAssessment, User
from ranks.assessment import run_assessment
from ranks.errors import InvalidArgument, RankEngineError
from ranks.periods import current_period, period_for
from ranks.results import OperationResult
from ranks.sales import SalesAggregator
from ranks.workflow import (
    confirm_assessment,
    demote_manager,
    expire_stale_assessments,
    list_demotion_candidates,
)

router = APIRouter(prefix="/api/v1/assessments", tags=["assessments"])


# ─── Schemas ────────────────────────────────────────────────────────────────

class AssessmentResponse(BaseModel):
    assessment_id: UUID
    user_id: UUID
    period_year: int
    period_half: int
    period_sales: int
    range_at_execution: int
    proposed_range_number: int
    outcome: str
    status: str
    range_change_applied: bool
    executed_by: str
    executed_at: datetime
    confirmed_by: str | None
    confirmed_at: datetime | None

    model_config = {"from_attributes": True}


class ExecuteRequest(BaseModel):
    """Omit year/half to assess the period containing 'now'."""
    year: int | None = Field(None, ge=1)
    half: int | None = None


class ConfirmRequest(BaseModel):
    apply_range_change: bool = True


def _period_or_400(year: int, half: int):
    try:
        return period_for(year, half)
    except InvalidArgument as exc:
        raise HTTPException(status_code=400, detail=exc.message)


# ─── Periods ────────────────────────────────────────────────────────────────

@router.get("/periods/current")
async def get_current_period(clock: Callable[[], datetime] = Depends(get_clock)):
    return current_period(clock()).to_dict()


@router.get("/periods/{year}/{half}")
async def get_period(year: int, half: int):
    return _period_or_400(year, half).to_dict()


# ─── Execution ──────────────────────────────────────────────────────────────

@router.post("/execute")
async def execute(
    body: ExecuteRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    sales: SalesAggregator = Depends(get_sales_aggregator),
    clock: Callable[[], datetime] = Depends(get_clock),
    admin: dict = Depends(require_admin),
):
    """Run the half-year assessment batch. Re-running a period only fills in missing managers."""
    now = clock()
    if body.year is None and body.half is None:
        period = current_period(now)
    elif body.year is None or body.half is None:
        raise HTTPException(status_code=400, detail="Provide both year and half, or neither")
    else:
        period = _period_or_400(body.year, body.half)

    settings = get_settings()
    result: OperationResult = await run_assessment(
        session_factory,
        period=period,
        executed_by=admin["sub"],
        sales=sales,
        now=now,
        max_workers=settings.rank_assessment_max_workers,
        timeout_seconds=settings.rank_assessment_timeout_seconds,
    )
    return unwrap(result)


# ─── Review queues ──────────────────────────────────────────────────────────

@router.get("/", response_model=list[AssessmentResponse])
async def list_assessments(
    year: int | None = None,
    half: int | None = None,
    status: str | None = None,
    outcome: str | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """List assessments with filters, newest period first."""
    query = select(ManagerAssessment)
    if year is not None:
        query = query.where(ManagerAssessment.period_year == year)
    if half is not None:
        query = query.where(ManagerAssessment.period_half == half)
    if status:
        query = query.where(ManagerAssessment.status == status.upper())
    if outcome:
        query = query.where(ManagerAssessment.outcome == outcome.upper())
    query = (
        query.order_by(
            ManagerAssessment.period_year.desc(),
            ManagerAssessment.period_half.desc(),
            ManagerAssessment.executed_at.desc(),
        )
        .offset(skip)
        .limit(limit)
    )
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/demotion-candidates")
async def get_demotion_candidates(
    year: int | None = None,
    half: int | None = None,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    period = None
    if year is not None and half is not None:
        period = _period_or_400(year, half)
    return await list_demotion_candidates(db, period)


@router.post("/expire")
async def expire(
    db: AsyncSession = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
    admin: dict = Depends(require_admin),
):
    settings = get_settings()
    current = current_period(clock())
    try:
        expired = await expire_stale_assessments(
            db, current=current, keep_periods=settings.rank_pending_retention_periods
        )
    except RankEngineError as exc:
        return unwrap(OperationResult.failed(exc))
    return {"success": True, "message": f"Expired {expired} stale assessments", "expired": expired}


@router.get("/{assessment_id}")
async def get_assessment(
    assessment_id: UUID,
    db: AsyncSession = Depends(get_db),
    sales: SalesAggregator = Depends(get_sales_aggregator),
    user: dict = Depends(get_current_user),
):
    """Single assessment with the member and, where available, the monthly breakdown."""
    assessment = await db.get(ManagerAssessment, assessment_id)
    if not assessment:
        raise HTTPException(status_code=404, detail="Assessment not found")
    member = await db.get(User, assessment.user_id)

    detail = AssessmentResponse.model_validate(assessment).model_dump(mode="json")
    detail["period"] = period_for(assessment.period_year, assessment.period_half).to_dict()
    detail["member"] = (
        {"name": member.name, "email": member.email, "current_range_number": member.current_range_number}
        if member
        else None
    )
    breakdown = getattr(sales, "monthly_breakdown", None)
    if breakdown is not None:
        detail["monthly_sales"] = await breakdown(
            assessment.user_id, period_for(assessment.period_year, assessment.period_half)
        )
    return detail


# ─── Transitions ────────────────────────────────────────────────────────────

@router.post("/{assessment_id}/confirm")
async def confirm(
    assessment_id: UUID,
    body: ConfirmRequest,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    """Confirm a PENDING assessment. Demotion candidates are never demoted here."""
    result = await confirm_assessment(
        db,
        assessment_id,
        confirmed_by=admin["sub"],
        apply_range_change=body.apply_range_change,
    )
    return unwrap(result)


@router.post("/{assessment_id}/demote")
async def demote(
    assessment_id: UUID,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    """Explicitly demote a PENDING demotion candidate by one range."""
    result = await demote_manager(db, assessment_id, executed_by=admin["sub"])
    return unwrap(result)
