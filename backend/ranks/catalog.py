"""
Range Catalog — ordered manager ranges and their thresholds.

The catalog is validated on construction so the engine can rely on:
  - range numbers 1..N, contiguous and strictly increasing
  - non-negative thresholds
  - promotion_threshold(N+1) >= maintenance_threshold(N)

It is read-only to the assessment engine; replace_catalog() is the only
write path and belongs to administrative configuration.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ManagerRange, User
from ranks.errors import InvalidArgument, InvalidState

logger = structlog.get_logger()


@dataclass(frozen=True)
class RangeTier:
    range_number: int
    name: str
    promotion_threshold: int
    maintenance_threshold: int

    def to_dict(self) -> dict:
        return {
            "range_number": self.range_number,
            "name": self.name,
            "promotion_threshold": self.promotion_threshold,
            "maintenance_threshold": self.maintenance_threshold,
        }


class RangeCatalog:
    def __init__(self, tiers: Iterable[RangeTier]):
        ordered = sorted(tiers, key=lambda t: t.range_number)
        validate_tiers(ordered)
        self._tiers = tuple(ordered)
        self._by_number = {t.range_number: t for t in self._tiers}

    def __iter__(self):
        return iter(self._tiers)

    def __len__(self) -> int:
        return len(self._tiers)

    @property
    def lowest(self) -> RangeTier:
        return self._tiers[0]

    @property
    def highest(self) -> RangeTier:
        return self._tiers[-1]

    def contains(self, range_number: int) -> bool:
        return range_number in self._by_number

    def get(self, range_number: int) -> RangeTier:
        try:
            return self._by_number[range_number]
        except KeyError:
            raise InvalidArgument(f"Unknown range {range_number}", range_number=range_number) from None

    def next_above(self, range_number: int) -> RangeTier | None:
        return self._by_number.get(range_number + 1)

    def previous_below(self, range_number: int) -> RangeTier | None:
        return self._by_number.get(range_number - 1)

    def to_list(self) -> list[dict]:
        return [t.to_dict() for t in self._tiers]


def validate_tiers(ordered: list[RangeTier]) -> None:
    """Raise InvalidArgument on the first catalog invariant violation."""
    if not ordered:
        raise InvalidArgument("Range catalog must contain at least one range")

    for expected, tier in enumerate(ordered, start=1):
        if tier.range_number != expected:
            raise InvalidArgument(
                f"Range numbers must run 1..N without gaps; expected {expected}, got {tier.range_number}",
                range_number=tier.range_number,
            )
        if tier.promotion_threshold < 0 or tier.maintenance_threshold < 0:
            raise InvalidArgument(f"Range {tier.range_number} has a negative threshold", range_number=tier.range_number)

    for current, nxt in zip(ordered, ordered[1:]):
        if nxt.promotion_threshold < current.maintenance_threshold:
            raise InvalidArgument(
                f"Promotion threshold of range {nxt.range_number} is below the maintenance "
                f"threshold of range {current.range_number}",
                range_number=nxt.range_number,
            )


def _tier_from_row(row: ManagerRange) -> RangeTier:
    return RangeTier(
        range_number=row.range_number,
        name=row.name,
        promotion_threshold=row.promotion_threshold,
        maintenance_threshold=row.maintenance_threshold,
    )


async def load_catalog(db: AsyncSession) -> RangeCatalog:
    result = await db.execute(select(ManagerRange).order_by(ManagerRange.range_number))
    return RangeCatalog(_tier_from_row(row) for row in result.scalars().all())


async def replace_catalog(db: AsyncSession, tiers: list[RangeTier], changed_by: str) -> RangeCatalog:
    """
    Replace the range configuration in one transaction.

    Ranges still occupied by a manager cannot be removed.
    """
    catalog = RangeCatalog(tiers)

    existing = {row.range_number: row for row in (await db.execute(select(ManagerRange))).scalars().all()}
    removed = sorted(n for n in existing if not catalog.contains(n))
    if removed:
        occupied = await db.execute(
            select(func.count(User.user_id)).where(User.current_range_number.in_(removed))
        )
        if int(occupied.scalar() or 0) > 0:
            raise InvalidState(
                "Cannot remove ranges that are still occupied by managers",
                removed_ranges=removed,
            )

    try:
        for number in removed:
            await db.delete(existing[number])
        for tier in catalog:
            row = existing.get(tier.range_number)
            if row is None:
                row = ManagerRange(range_number=tier.range_number)
                db.add(row)
            row.name = tier.name
            row.promotion_threshold = tier.promotion_threshold
            row.maintenance_threshold = tier.maintenance_threshold
            row.updated_by = changed_by
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "catalog.replaced",
        changed_by=changed_by,
        range_count=len(catalog),
        removed_ranges=removed,
    )
    return catalog
