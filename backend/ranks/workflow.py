"""
Assessment Confirmation & Demotion Workflow.

State machine for a ManagerAssessment:

    PENDING ──confirm──▶ CONFIRMED   (PROMOTE applied only when requested)
    PENDING ──confirm──▶ PENDING     (DEMOTE_CANDIDATE: review recorded, rank untouched)
    PENDING ──demote───▶ DEMOTED     (DEMOTE_CANDIDATE only, explicit operator action)
    PENDING ──expire───▶ EXPIRED     (left unreviewed past the retention window)

Every transition is a conditional UPDATE on status='PENDING', so a lost
race or a repeated call surfaces as InvalidState instead of a double
application. Rank changes are conditional on the user still holding the
range the assessment was computed against.

History rows go through the audit sink inside a SAVEPOINT. With the
best-effort policy a failed history write is logged and the transition
still commits; with the strict policy it rolls the transition back.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import ManagerAssessment, RangeChangeHistory, User
from ranks.assessment import Outcome
from ranks.errors import DependencyFailure, InvalidArgument, InvalidState, NotFound, RankEngineError
from ranks.periods import AssessmentPeriod, period_for, previous_period
from ranks.results import OperationResult

logger = structlog.get_logger()


class AuditPolicy(str, Enum):
    BEST_EFFORT = "best_effort"
    STRICT = "strict"


def default_audit_policy() -> AuditPolicy:
    return AuditPolicy(get_settings().rank_audit_policy.strip().lower())


def _utcnow() -> datetime:
    return datetime.utcnow()


# ─── Audit sink ─────────────────────────────────────────────────────────────


async def _append_range_history(db: AsyncSession, entry: RangeChangeHistory) -> None:
    db.add(entry)
    await db.flush()


async def record_range_change(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    assessment_id: uuid.UUID | None,
    from_range_number: int | None,
    to_range_number: int | None,
    reason: str,
    changed_by: str,
    changed_at: datetime,
    policy: AuditPolicy,
) -> bool:
    """Append a history row inside a SAVEPOINT. Returns False when a best-effort write was dropped."""
    entry = RangeChangeHistory(
        user_id=user_id,
        assessment_id=assessment_id,
        from_range_number=from_range_number,
        to_range_number=to_range_number,
        reason=reason,
        changed_by=changed_by,
        changed_at=changed_at,
    )
    try:
        async with db.begin_nested():
            await _append_range_history(db, entry)
    except SQLAlchemyError as exc:
        if policy is AuditPolicy.STRICT:
            raise DependencyFailure("Could not record the range change history") from exc
        logger.warning(
            "workflow.history_write_failed",
            user_id=str(user_id),
            assessment_id=str(assessment_id) if assessment_id else None,
            error=str(exc),
        )
        return False
    return True


# ─── Loading ────────────────────────────────────────────────────────────────


async def _load_pending(db: AsyncSession, assessment_id: uuid.UUID) -> tuple[ManagerAssessment, User]:
    if assessment_id is None:
        raise InvalidArgument("assessment_id is required")
    assessment = await db.get(ManagerAssessment, assessment_id)
    if assessment is None:
        raise NotFound("Assessment not found", assessment_id=str(assessment_id))
    user = await db.get(User, assessment.user_id)
    if user is None:
        raise NotFound("Assessed user not found", assessment_id=str(assessment_id))
    return assessment, user


async def _claim(
    db: AsyncSession,
    assessment_id: uuid.UUID,
    *,
    new_status: str,
    values: dict,
    outcome: str | None = None,
    unreviewed: bool = False,
) -> None:
    """Flip PENDING → new_status; anything else means someone got there first."""
    conditions = [
        ManagerAssessment.assessment_id == assessment_id,
        ManagerAssessment.status == "PENDING",
    ]
    if outcome is not None:
        conditions.append(ManagerAssessment.outcome == outcome)
    if unreviewed:
        conditions.append(ManagerAssessment.confirmed_at.is_(None))
    result = await db.execute(
        update(ManagerAssessment).where(*conditions).values(status=new_status, **values)
    )
    if result.rowcount != 1:
        raise InvalidState("This assessment has already been processed", assessment_id=str(assessment_id))


async def _move_range(db: AsyncSession, user_id: uuid.UUID, *, expected: int, target: int, now: datetime) -> None:
    result = await db.execute(
        update(User)
        .where(User.user_id == user_id, User.current_range_number == expected)
        .values(current_range_number=target, updated_at=now)
    )
    if result.rowcount != 1:
        raise InvalidState(
            "The member's range changed after this assessment was executed",
            user_id=str(user_id),
        )


# ─── Confirmation ───────────────────────────────────────────────────────────


async def _confirm(
    db: AsyncSession,
    assessment_id: uuid.UUID,
    confirmed_by: str,
    apply_range_change: bool,
    policy: AuditPolicy,
) -> dict[str, Any]:
    if not confirmed_by:
        raise InvalidArgument("confirmed_by is required")

    assessment, user = await _load_pending(db, assessment_id)
    if assessment.status != "PENDING":
        raise InvalidState(
            f"Assessment is {assessment.status}, only PENDING assessments can be confirmed",
            assessment_id=str(assessment_id),
        )

    outcome = assessment.outcome
    # A reviewed demotion candidate stays PENDING so demote_manager can still act on it.
    awaits_demotion = outcome == Outcome.DEMOTE_CANDIDATE.value
    if awaits_demotion and assessment.confirmed_at is not None:
        raise InvalidState(
            "This demotion candidate has already been reviewed",
            assessment_id=str(assessment_id),
        )

    user_id = user.user_id
    user_name = user.name
    from_range = assessment.range_at_execution
    to_range = assessment.proposed_range_number
    period_label = period_for(assessment.period_year, assessment.period_half).label
    applies = bool(apply_range_change) and outcome == Outcome.PROMOTE.value
    new_status = "PENDING" if awaits_demotion else "CONFIRMED"
    now = _utcnow()
    history_recorded = None

    try:
        await _claim(
            db,
            assessment_id,
            new_status=new_status,
            values={"confirmed_by": confirmed_by, "confirmed_at": now, "range_change_applied": applies},
            unreviewed=awaits_demotion,
        )
        if applies:
            await _move_range(db, user_id, expected=from_range, target=to_range, now=now)
            history_recorded = await record_range_change(
                db,
                user_id=user_id,
                assessment_id=assessment_id,
                from_range_number=from_range,
                to_range_number=to_range,
                reason=f"Half-year assessment promotion ({period_label})",
                changed_by=confirmed_by,
                changed_at=now,
                policy=policy,
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "workflow.assessment_confirmed",
        assessment_id=str(assessment_id),
        user_id=str(user_id),
        outcome=outcome,
        range_change_applied=applies,
        confirmed_by=confirmed_by,
    )
    return {
        "user_name": user_name,
        "assessment_id": str(assessment_id),
        "user_id": str(user_id),
        "outcome": outcome,
        "status": new_status,
        "range_change_applied": applies,
        "range_number": to_range if applies else from_range,
        "history_recorded": history_recorded,
    }


async def confirm_assessment(
    db: AsyncSession,
    assessment_id: uuid.UUID,
    confirmed_by: str,
    apply_range_change: bool = True,
    audit_policy: AuditPolicy | None = None,
) -> OperationResult:
    """
    Confirm a PENDING assessment.

    Only PROMOTE outcomes with apply_range_change=True move the member's
    range. MAINTAIN is marked CONFIRMED. A DEMOTE_CANDIDATE only gets its
    review recorded and stays PENDING; demotion goes through demote_manager().
    """
    policy = audit_policy or default_audit_policy()
    try:
        payload = await _confirm(db, assessment_id, confirmed_by, apply_range_change, policy)
    except RankEngineError as exc:
        logger.info("workflow.confirm_rejected", assessment_id=str(assessment_id), code=exc.code)
        return OperationResult.failed(exc)
    except SQLAlchemyError as exc:
        logger.error("workflow.confirm_failed", assessment_id=str(assessment_id), error=str(exc), exc_info=True)
        return OperationResult.failed(DependencyFailure("Could not confirm the assessment, please retry"))

    name = payload.pop("user_name")
    if payload["range_change_applied"]:
        message = f"Confirmed assessment for {name}; promoted to range {payload['range_number']}"
    elif payload["status"] == "PENDING":
        message = f"Reviewed demotion candidate {name}; range unchanged until demoted explicitly"
    else:
        message = f"Confirmed assessment for {name}; range unchanged"
    return OperationResult(success=True, message=message, payload=payload)


# ─── Demotion ───────────────────────────────────────────────────────────────


async def _demote(
    db: AsyncSession,
    assessment_id: uuid.UUID,
    executed_by: str,
    policy: AuditPolicy,
) -> dict[str, Any]:
    if not executed_by:
        raise InvalidArgument("executed_by is required")

    assessment, user = await _load_pending(db, assessment_id)
    if assessment.outcome != Outcome.DEMOTE_CANDIDATE.value:
        raise InvalidState("This assessment is not a demotion candidate", assessment_id=str(assessment_id))
    if assessment.status != "PENDING":
        raise InvalidState(
            f"Assessment is {assessment.status}, only PENDING demotion candidates can be demoted",
            assessment_id=str(assessment_id),
        )

    user_id = user.user_id
    user_name = user.name
    from_range = assessment.range_at_execution
    to_range = assessment.proposed_range_number
    period_sales = assessment.period_sales
    period_label = period_for(assessment.period_year, assessment.period_half).label
    now = _utcnow()

    try:
        await _claim(
            db,
            assessment_id,
            new_status="DEMOTED",
            values={"confirmed_by": executed_by, "confirmed_at": now, "range_change_applied": True},
            outcome=Outcome.DEMOTE_CANDIDATE.value,
        )
        await _move_range(db, user_id, expected=from_range, target=to_range, now=now)
        history_recorded = await record_range_change(
            db,
            user_id=user_id,
            assessment_id=assessment_id,
            from_range_number=from_range,
            to_range_number=to_range,
            reason=f"Half-year assessment demotion ({period_label}, sales {period_sales:,})",
            changed_by=executed_by,
            changed_at=now,
            policy=policy,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "workflow.manager_demoted",
        assessment_id=str(assessment_id),
        user_id=str(user_id),
        from_range=from_range,
        to_range=to_range,
        executed_by=executed_by,
    )
    return {
        "user_name": user_name,
        "assessment_id": str(assessment_id),
        "user_id": str(user_id),
        "status": "DEMOTED",
        "from_range_number": from_range,
        "range_number": to_range,
        "history_recorded": history_recorded,
    }


async def demote_manager(
    db: AsyncSession,
    assessment_id: uuid.UUID,
    executed_by: str,
    audit_policy: AuditPolicy | None = None,
) -> OperationResult:
    """Apply a PENDING DEMOTE_CANDIDATE assessment. A second call fails with invalid_state."""
    policy = audit_policy or default_audit_policy()
    try:
        payload = await _demote(db, assessment_id, executed_by, policy)
    except RankEngineError as exc:
        logger.info("workflow.demote_rejected", assessment_id=str(assessment_id), code=exc.code)
        return OperationResult.failed(exc)
    except SQLAlchemyError as exc:
        logger.error("workflow.demote_failed", assessment_id=str(assessment_id), error=str(exc), exc_info=True)
        return OperationResult.failed(DependencyFailure("Could not demote the manager, please retry"))

    name = payload.pop("user_name")
    return OperationResult(
        success=True,
        message=f"Demoted {name} from range {payload['from_range_number']} to range {payload['range_number']}",
        payload=payload,
    )


# ─── Expiry & review queues ─────────────────────────────────────────────────


def _before(period: AssessmentPeriod):
    return or_(
        ManagerAssessment.period_year < period.year,
        and_(
            ManagerAssessment.period_year == period.year,
            ManagerAssessment.period_half < period.half,
        ),
    )


async def expire_stale_assessments(db: AsyncSession, *, current: AssessmentPeriod, keep_periods: int = 1) -> int:
    """
    Expire PENDING assessments older than the retention window.

    keep_periods=1 keeps the period that just closed reviewable while
    ``current`` is running; anything older becomes EXPIRED.
    """
    if keep_periods < 0:
        raise InvalidArgument("keep_periods must be >= 0", keep_periods=keep_periods)
    cutoff = current
    for _ in range(keep_periods):
        cutoff = previous_period(cutoff)

    try:
        result = await db.execute(
            update(ManagerAssessment)
            .where(ManagerAssessment.status == "PENDING", _before(cutoff))
            .values(status="EXPIRED")
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise DependencyFailure("Could not expire stale assessments") from exc

    expired = int(result.rowcount or 0)
    logger.info("workflow.assessments_expired", cutoff=cutoff.label, expired=expired)
    return expired


async def list_demotion_candidates(db: AsyncSession, period: AssessmentPeriod | None = None) -> dict[str, Any]:
    """PENDING demotion candidates, newest period first and lowest sales first."""
    filters = [
        ManagerAssessment.outcome == Outcome.DEMOTE_CANDIDATE.value,
        ManagerAssessment.status == "PENDING",
    ]
    if period is not None:
        filters += [
            ManagerAssessment.period_year == period.year,
            ManagerAssessment.period_half == period.half,
        ]

    rows = await db.execute(
        select(ManagerAssessment, User)
        .join(User, User.user_id == ManagerAssessment.user_id)
        .where(*filters)
        .order_by(
            ManagerAssessment.period_year.desc(),
            ManagerAssessment.period_half.desc(),
            ManagerAssessment.period_sales.asc(),
        )
    )
    candidates = [
        {
            "assessment_id": str(a.assessment_id),
            "user_id": str(u.user_id),
            "member_code": u.member_code,
            "name": u.name,
            "email": u.email,
            "period": period_for(a.period_year, a.period_half).label,
            "period_sales": a.period_sales,
            "range_at_execution": a.range_at_execution,
            "proposed_range_number": a.proposed_range_number,
            "current_range_number": u.current_range_number,
            "reviewed_by": a.confirmed_by,
        }
        for a, u in rows.all()
    ]

    grouped = await db.execute(
        select(
            ManagerAssessment.period_year,
            ManagerAssessment.period_half,
            func.count(ManagerAssessment.assessment_id),
        )
        .where(*filters)
        .group_by(ManagerAssessment.period_year, ManagerAssessment.period_half)
        .order_by(ManagerAssessment.period_year.desc(), ManagerAssessment.period_half.desc())
    )
    period_summary = [
        {"year": year, "half": half, "label": period_for(year, half).label, "count": count}
        for year, half, count in grouped.all()
    ]

    return {"candidates": candidates, "total_count": len(candidates), "period_summary": period_summary}
