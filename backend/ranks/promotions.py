"""
Promotion Applications — role upgrade workflow.

  MEMBER  ──apply──▶ PENDING ──approve──▶ APPROVED ──complete──▶ COMPLETED
                        │                    │
                        └──────reject────────┴──▶ REJECTED

Ladder: MEMBER → FP_AIDE → MANAGER, one step at a time.

Eligibility is checked when applying and again when completing, because
the collaborator signals can move between the two. Only completion touches
User.role; a new manager is seated in the lowest range.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import PromotionApplication, PromotionProgress, RoleChangeHistory, User
from ranks.catalog import load_catalog
from ranks.eligibility import (
    EligibilityConditions,
    EligibilityResult,
    EligibilityThresholds,
    GateCheck,
    TargetRole,
    evaluate_eligibility,
)
from ranks.errors import Conflict, DependencyFailure, InvalidArgument, InvalidState, NotFound, RankEngineError
from ranks.results import OperationResult
from ranks.workflow import AuditPolicy, default_audit_policy

logger = structlog.get_logger()

REQUIRED_CURRENT_ROLE = {
    TargetRole.FP_AIDE: "MEMBER",
    TargetRole.MANAGER: "FP_AIDE",
}
IN_FLIGHT_STATUSES = ("PENDING", "APPROVED")


class PromotionSignalSource(Protocol):
    async def conditions_for(self, user_id: uuid.UUID) -> EligibilityConditions:
        ...

    async def identity_document_submitted(self, user_id: uuid.UUID) -> bool:
        ...


class DbPromotionSignalSource:
    """Reads the promotion_progress row maintained by the onboarding/compensation side."""

    def __init__(self, db: AsyncSession):
        self._db = db

    async def _progress(self, user_id: uuid.UUID) -> PromotionProgress | None:
        return await self._db.get(PromotionProgress, user_id)

    async def conditions_for(self, user_id: uuid.UUID) -> EligibilityConditions:
        row = await self._progress(user_id)
        if row is None:
            return EligibilityConditions()
        return EligibilityConditions(
            test_passed=row.test_passed,
            lp_meeting_completed=row.lp_meeting_completed,
            survey_completed=row.survey_completed,
            contract_achieved=row.contract_achieved,
            compensation_average=row.compensation_average,
            member_referrals=row.member_referrals,
            fp_referrals=row.fp_referrals,
        )

    async def identity_document_submitted(self, user_id: uuid.UUID) -> bool:
        row = await self._progress(user_id)
        return bool(row and row.id_document_submitted)


def _utcnow() -> datetime:
    return datetime.utcnow()


def _coerce_target(target_role: TargetRole | str) -> TargetRole:
    try:
        return TargetRole(target_role)
    except ValueError:
        raise InvalidArgument(f"Unsupported promotion target role: {target_role!r}") from None


async def _get_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    if user_id is None:
        raise InvalidArgument("user_id is required")
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User not found", user_id=str(user_id))
    return user


async def _get_application(db: AsyncSession, application_id: uuid.UUID) -> PromotionApplication:
    if application_id is None:
        raise InvalidArgument("application_id is required")
    application = await db.get(PromotionApplication, application_id)
    if application is None:
        raise NotFound("Promotion application not found", application_id=str(application_id))
    return application


async def _assess_user(
    user: User,
    target: TargetRole,
    signals: PromotionSignalSource,
    thresholds: EligibilityThresholds | None,
) -> EligibilityResult:
    """Pure gate evaluation plus the checks owned by this layer (current role, identity document)."""
    conditions = await signals.conditions_for(user.user_id)
    result = evaluate_eligibility(conditions, target, thresholds or EligibilityThresholds.from_settings())

    required_role = REQUIRED_CURRENT_ROLE[target]
    extra = {"current_role": GateCheck(met=user.role == required_role, current=user.role, target=required_role)}
    if target is TargetRole.FP_AIDE:
        submitted = await signals.identity_document_submitted(user.user_id)
        extra["id_document_submitted"] = GateCheck(met=submitted, current=submitted, target=True)

    result.checks = {**extra, **result.checks}
    result.unmet = [name for name, check in result.checks.items() if not check.met]
    result.is_eligible = not result.unmet
    return result


async def evaluate_user_eligibility(
    db: AsyncSession,
    user_id: uuid.UUID,
    target_role: TargetRole | str,
    signals: PromotionSignalSource,
    thresholds: EligibilityThresholds | None = None,
) -> OperationResult:
    """evaluateEligibility: read-only, never mutates the user or any application."""
    try:
        target = _coerce_target(target_role)
        user = await _get_user(db, user_id)
        result = await _assess_user(user, target, signals, thresholds)
    except RankEngineError as exc:
        return OperationResult.failed(exc)
    except SQLAlchemyError as exc:
        logger.error("promotions.eligibility_failed", user_id=str(user_id), error=str(exc), exc_info=True)
        return OperationResult.failed(DependencyFailure("Could not check promotion eligibility, please retry"))

    message = (
        f"Eligible for promotion to {target.value}"
        if result.is_eligible
        else f"Not yet eligible for promotion to {target.value}"
    )
    return OperationResult(success=True, message=message, payload={"eligibility": result.to_dict()})


# ─── Apply ──────────────────────────────────────────────────────────────────


async def _in_flight(db: AsyncSession, user_id: uuid.UUID, target: TargetRole) -> PromotionApplication | None:
    result = await db.execute(
        select(PromotionApplication).where(
            PromotionApplication.user_id == user_id,
            PromotionApplication.target_role == target.value,
            PromotionApplication.status.in_(IN_FLIGHT_STATUSES),
        )
    )
    return result.scalars().first()


async def _apply(
    db: AsyncSession,
    user_id: uuid.UUID,
    target_role: TargetRole | str,
    signals: PromotionSignalSource,
    thresholds: EligibilityThresholds | None,
) -> dict[str, Any]:
    target = _coerce_target(target_role)
    user = await _get_user(db, user_id)

    existing = await _in_flight(db, user.user_id, target)
    if existing is not None:
        raise Conflict(
            "A promotion application for this role is already in progress",
            application_id=str(existing.application_id),
        )

    eligibility = await _assess_user(user, target, signals, thresholds)
    if not eligibility.is_eligible:
        raise InvalidState(
            "Promotion conditions are not met",
            eligibility=eligibility.to_dict(),
        )

    application = PromotionApplication(
        user_id=user.user_id,
        target_role=target.value,
        status="PENDING",
        applied_at=_utcnow(),
    )
    applicant_id = user.user_id
    db.add(application)
    try:
        await db.commit()
    except IntegrityError as exc:
        # A concurrent apply won the in-flight slot between the check and the insert.
        await db.rollback()
        winner = await _in_flight(db, applicant_id, target)
        raise Conflict(
            "A promotion application for this role is already in progress",
            application_id=str(winner.application_id) if winner else None,
        ) from exc
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "promotions.applied",
        application_id=str(application.application_id),
        user_id=str(user_id),
        target_role=target.value,
    )
    return {
        "application_id": str(application.application_id),
        "user_id": str(user_id),
        "target_role": target.value,
        "status": "PENDING",
        "applied_at": application.applied_at.isoformat(),
    }


async def apply_for_promotion(
    db: AsyncSession,
    user_id: uuid.UUID,
    target_role: TargetRole | str,
    signals: PromotionSignalSource,
    thresholds: EligibilityThresholds | None = None,
) -> OperationResult:
    try:
        payload = await _apply(db, user_id, target_role, signals, thresholds)
    except RankEngineError as exc:
        logger.info("promotions.apply_rejected", user_id=str(user_id), code=exc.code)
        return OperationResult.failed(exc)
    except SQLAlchemyError as exc:
        logger.error("promotions.apply_failed", user_id=str(user_id), error=str(exc), exc_info=True)
        return OperationResult.failed(DependencyFailure("Could not submit the application, please retry"))
    return OperationResult(success=True, message="Promotion application submitted", payload={"application": payload})


# ─── Review ─────────────────────────────────────────────────────────────────


async def _transition(
    db: AsyncSession,
    application_id: uuid.UUID,
    *,
    from_statuses: tuple[str, ...],
    values: dict,
) -> None:
    result = await db.execute(
        update(PromotionApplication)
        .where(
            PromotionApplication.application_id == application_id,
            PromotionApplication.status.in_(from_statuses),
        )
        .values(**values)
    )
    if result.rowcount != 1:
        raise InvalidState("This application has already been processed", application_id=str(application_id))


async def _review(db: AsyncSession, application_id: uuid.UUID, from_statuses: tuple[str, ...], values: dict) -> str:
    application = await _get_application(db, application_id)
    if application.status not in from_statuses:
        raise InvalidState(
            f"Application is {application.status}",
            application_id=str(application_id),
        )
    target_role = application.target_role
    try:
        await _transition(db, application_id, from_statuses=from_statuses, values=values)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return target_role


async def approve_application(db: AsyncSession, application_id: uuid.UUID, reviewer: str) -> OperationResult:
    """PENDING → APPROVED. The role itself changes in complete_promotion()."""
    try:
        if not reviewer:
            raise InvalidArgument("reviewer is required")
        target_role = await _review(
            db,
            application_id,
            ("PENDING",),
            {"status": "APPROVED", "approved_at": _utcnow(), "approved_by": reviewer},
        )
    except RankEngineError as exc:
        return OperationResult.failed(exc)
    except SQLAlchemyError as exc:
        logger.error("promotions.approve_failed", application_id=str(application_id), error=str(exc), exc_info=True)
        return OperationResult.failed(DependencyFailure("Could not approve the application, please retry"))

    logger.info("promotions.approved", application_id=str(application_id), reviewer=reviewer)
    return OperationResult.ok(
        f"Approved promotion application to {target_role}",
        application_id=str(application_id),
        status="APPROVED",
    )


async def reject_application(
    db: AsyncSession,
    application_id: uuid.UUID,
    reviewer: str,
    reason: str,
) -> OperationResult:
    try:
        if not reason or not reason.strip():
            raise InvalidArgument("A rejection reason is required")
        if not reviewer:
            raise InvalidArgument("reviewer is required")
        target_role = await _review(
            db,
            application_id,
            IN_FLIGHT_STATUSES,
            {
                "status": "REJECTED",
                "rejected_at": _utcnow(),
                "rejected_by": reviewer,
                "rejection_reason": reason.strip(),
            },
        )
    except RankEngineError as exc:
        return OperationResult.failed(exc)
    except SQLAlchemyError as exc:
        logger.error("promotions.reject_failed", application_id=str(application_id), error=str(exc), exc_info=True)
        return OperationResult.failed(DependencyFailure("Could not reject the application, please retry"))

    logger.info("promotions.rejected", application_id=str(application_id), reviewer=reviewer)
    return OperationResult.ok(
        f"Rejected promotion application to {target_role}",
        application_id=str(application_id),
        status="REJECTED",
    )


# ─── Complete ───────────────────────────────────────────────────────────────


async def _append_role_history(db: AsyncSession, entry: RoleChangeHistory) -> None:
    db.add(entry)
    await db.flush()


async def _record_role_change(db: AsyncSession, entry: RoleChangeHistory, policy: AuditPolicy) -> bool:
    try:
        async with db.begin_nested():
            await _append_role_history(db, entry)
    except SQLAlchemyError as exc:
        if policy is AuditPolicy.STRICT:
            raise DependencyFailure("Could not record the role change history") from exc
        logger.warning("promotions.history_write_failed", user_id=str(entry.user_id), error=str(exc))
        return False
    return True


async def _complete(
    db: AsyncSession,
    application_id: uuid.UUID,
    operator: str,
    signals: PromotionSignalSource,
    thresholds: EligibilityThresholds | None,
    policy: AuditPolicy,
) -> dict[str, Any]:
    if not operator:
        raise InvalidArgument("operator is required")
    application = await _get_application(db, application_id)
    if application.status != "APPROVED":
        raise InvalidState(
            f"Application is {application.status}, only APPROVED applications can be completed",
            application_id=str(application_id),
        )

    target = TargetRole(application.target_role)
    user = await _get_user(db, application.user_id)
    eligibility = await _assess_user(user, target, signals, thresholds)
    if not eligibility.is_eligible:
        raise InvalidState("Promotion conditions are no longer met", eligibility=eligibility.to_dict())

    user_id = user.user_id
    user_name = user.name
    from_role = user.role
    now = _utcnow()
    values: dict[str, Any] = {"role": target.value, "updated_at": now}
    if target is TargetRole.MANAGER:
        catalog = await load_catalog(db)
        values.update(current_range_number=catalog.lowest.range_number, manager_promoted_at=now)

    try:
        await _transition(
            db,
            application_id,
            from_statuses=("APPROVED",),
            values={"status": "COMPLETED", "completed_at": now},
        )
        moved = await db.execute(
            update(User).where(User.user_id == user_id, User.role == from_role).values(**values)
        )
        if moved.rowcount != 1:
            raise InvalidState("The member's role changed during completion", user_id=str(user_id))
        history_recorded = await _record_role_change(
            db,
            RoleChangeHistory(
                user_id=user_id,
                application_id=application_id,
                from_role=from_role,
                to_role=target.value,
                reason=f"Promotion application {application_id} completed",
                changed_by=operator,
                changed_at=now,
            ),
            policy,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "promotions.completed",
        application_id=str(application_id),
        user_id=str(user_id),
        from_role=from_role,
        to_role=target.value,
        operator=operator,
    )
    return {
        "user_name": user_name,
        "application_id": str(application_id),
        "user_id": str(user_id),
        "role": target.value,
        "range_number": values.get("current_range_number"),
        "status": "COMPLETED",
        "history_recorded": history_recorded,
    }


async def complete_promotion(
    db: AsyncSession,
    application_id: uuid.UUID,
    operator: str,
    signals: PromotionSignalSource,
    thresholds: EligibilityThresholds | None = None,
    audit_policy: AuditPolicy | None = None,
) -> OperationResult:
    """Apply an APPROVED application: role change, range seat for managers, history, COMPLETED."""
    policy = audit_policy or default_audit_policy()
    try:
        payload = await _complete(db, application_id, operator, signals, thresholds, policy)
    except RankEngineError as exc:
        logger.info("promotions.complete_rejected", application_id=str(application_id), code=exc.code)
        return OperationResult.failed(exc)
    except SQLAlchemyError as exc:
        logger.error("promotions.complete_failed", application_id=str(application_id), error=str(exc), exc_info=True)
        return OperationResult.failed(DependencyFailure("Could not complete the promotion, please retry"))

    name = payload.pop("user_name")
    return OperationResult(success=True, message=f"{name} is now {payload['role']}", payload=payload)
