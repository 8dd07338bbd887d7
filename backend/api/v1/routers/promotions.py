"""
Promotion Router — MEMBER → FP_AIDE → MANAGER applications.

Eligibility reads are side-effect free. Applying creates a PENDING
application, review moves it to APPROVED or REJECTED, and completion is the
only step that changes the member's role.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db, get_signal_source, require_admin
from api.errors import unwrap
from db.models import PromotionApplication
from ranks.promotions import (
    PromotionSignalSource,
    apply_for_promotion,
    approve_application,
    complete_promotion,
    evaluate_user_eligibility,
    reject_application,
)

router = APIRouter(prefix="/api/v1/promotions", tags=["promotions"])


# ─── Schemas ────────────────────────────────────────────────────────────────

class ApplicationResponse(BaseModel):
    application_id: UUID
    user_id: UUID
    target_role: str
    status: str
    applied_at: datetime
    approved_at: datetime | None = None
    approved_by: str | None = None
    rejected_at: datetime | None = None
    rejected_by: str | None = None
    rejection_reason: str | None = None
    completed_at: datetime | None = None

    model_config = {"from_attributes": True}


class ApplyRequest(BaseModel):
    user_id: UUID
    target_role: str


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


# ─── Eligibility ────────────────────────────────────────────────────────────

@router.get("/eligibility/{user_id}")
async def get_eligibility(
    user_id: UUID,
    target_role: str = Query(...),
    db: AsyncSession = Depends(get_db),
    signals: PromotionSignalSource = Depends(get_signal_source),
    user: dict = Depends(get_current_user),
):
    result = await evaluate_user_eligibility(db, user_id, target_role.upper(), signals)
    return unwrap(result)


# ─── Applications ───────────────────────────────────────────────────────────

@router.post("/apply", status_code=201)
async def apply(
    body: ApplyRequest,
    db: AsyncSession = Depends(get_db),
    signals: PromotionSignalSource = Depends(get_signal_source),
    user: dict = Depends(get_current_user),
):
    """Submit an application. Unmet conditions come back as 409 with the gate breakdown."""
    result = await apply_for_promotion(db, body.user_id, body.target_role.upper(), signals)
    return unwrap(result)


@router.get("/", response_model=list[ApplicationResponse])
async def list_applications(
    status: str | None = None,
    target_role: str | None = None,
    user_id: UUID | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    query = select(PromotionApplication)
    if status:
        query = query.where(PromotionApplication.status == status.upper())
    if target_role:
        query = query.where(PromotionApplication.target_role == target_role.upper())
    if user_id:
        query = query.where(PromotionApplication.user_id == user_id)
    query = query.order_by(PromotionApplication.applied_at.desc()).offset(skip).limit(limit)
    result = await db.execute(query)
    return result.scalars().all()


@router.post("/{application_id}/approve")
async def approve(
    application_id: UUID,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    result = await approve_application(db, application_id, reviewer=admin["sub"])
    return unwrap(result)


@router.post("/{application_id}/reject")
async def reject(
    application_id: UUID,
    body: RejectRequest,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    result = await reject_application(db, application_id, reviewer=admin["sub"], reason=body.reason)
    return unwrap(result)


@router.post("/{application_id}/complete")
async def complete(
    application_id: UUID,
    db: AsyncSession = Depends(get_db),
    signals: PromotionSignalSource = Depends(get_signal_source),
    admin: dict = Depends(require_admin),
):
    """Apply an approved application. Eligibility is re-checked first."""
    result = await complete_promotion(db, application_id, operator=admin["sub"], signals=signals)
    return unwrap(result)
