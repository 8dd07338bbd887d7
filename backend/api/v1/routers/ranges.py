"""
Range Router — manager range catalog.

Reading is open to any authenticated operator; replacing the catalog is an
administrative configuration change and is validated before anything is
written.
"""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db, require_admin
from api.errors import unwrap
from db.models import ManagerRange
from ranks.catalog import RangeTier, replace_catalog
from ranks.errors import DependencyFailure, RankEngineError
from ranks.results import OperationResult

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/ranges", tags=["ranges"])


# ─── Schemas ────────────────────────────────────────────────────────────────

class RangeResponse(BaseModel):
    range_number: int
    name: str
    promotion_threshold: int
    maintenance_threshold: int
    updated_by: str | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class RangeIn(BaseModel):
    range_number: int = Field(..., ge=1)
    name: str = Field(..., min_length=1, max_length=100)
    promotion_threshold: int = Field(..., ge=0)
    maintenance_threshold: int = Field(..., ge=0)


class RangeCatalogRequest(BaseModel):
    ranges: list[RangeIn] = Field(..., min_length=1)


# ─── Endpoints ──────────────────────────────────────────────────────────────

@router.get("/", response_model=list[RangeResponse])
async def list_ranges(
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Ranges ordered by range number."""
    result = await db.execute(select(ManagerRange).order_by(ManagerRange.range_number))
    return result.scalars().all()


@router.put("/", response_model=list[RangeResponse])
async def put_ranges(
    body: RangeCatalogRequest,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    """Replace the range catalog. Invalid threshold orderings are rejected with 400."""
    tiers = [RangeTier(**r.model_dump()) for r in body.ranges]
    try:
        await replace_catalog(db, tiers, changed_by=admin["sub"])
    except RankEngineError as exc:
        return unwrap(OperationResult.failed(exc))
    except SQLAlchemyError as exc:
        logger.error("ranges.replace_failed", changed_by=admin["sub"], error=str(exc), exc_info=True)
        return unwrap(OperationResult.failed(DependencyFailure("Could not save the range catalog, please retry")))
    result = await db.execute(select(ManagerRange).order_by(ManagerRange.range_number))
    return result.scalars().all()
