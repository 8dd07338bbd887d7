"""
Assessment Periods — half-year windows for manager rank assessment.

  - H1: January 1 – June 30
  - H2: July 1 – December 31

Periods are contiguous and never overlap, so any instant belongs to exactly
one of them. Everything here is pure; callers that want "the current period"
pass their own clock reading.
"""

from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime

from ranks.errors import InvalidArgument

HALF_START_MONTH = {1: 1, 2: 7}


@dataclass(frozen=True, order=True)
class AssessmentPeriod:
    year: int
    half: int  # 1 or 2

    @property
    def start_month(self) -> int:
        return HALF_START_MONTH[self.half]

    @property
    def end_month(self) -> int:
        return self.start_month + 5

    @property
    def start_date(self) -> date:
        return date(self.year, self.start_month, 1)

    @property
    def end_date(self) -> date:
        return date(self.year, self.end_month, monthrange(self.year, self.end_month)[1])

    @property
    def label(self) -> str:
        return f"{self.year} H{self.half}"

    def months(self) -> list[str]:
        """Six 'YYYY-MM' keys, oldest first."""
        return [f"{self.year}-{m:02d}" for m in range(self.start_month, self.end_month + 1)]

    def contains(self, moment: date | datetime) -> bool:
        day = moment.date() if isinstance(moment, datetime) else moment
        return self.start_date <= day <= self.end_date

    def to_dict(self) -> dict:
        return {
            "year": self.year,
            "half": self.half,
            "label": self.label,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
        }


def period_for(year: int, half: int) -> AssessmentPeriod:
    """Deterministic period for (year, half). Invalid halves are rejected, never corrected."""
    if isinstance(half, bool) or not isinstance(half, int) or half not in HALF_START_MONTH:
        raise InvalidArgument(f"half must be 1 or 2, got {half!r}", half=half)
    if isinstance(year, bool) or not isinstance(year, int) or year < 1:
        raise InvalidArgument(f"year must be a positive integer, got {year!r}", year=year)
    return AssessmentPeriod(year=year, half=half)


def current_period(now: date | datetime) -> AssessmentPeriod:
    """The period containing ``now``."""
    return period_for(now.year, 1 if now.month <= 6 else 2)


def previous_period(period: AssessmentPeriod) -> AssessmentPeriod:
    if period.half == 2:
        return period_for(period.year, 1)
    return period_for(period.year - 1, 2)


def next_period(period: AssessmentPeriod) -> AssessmentPeriod:
    if period.half == 1:
        return period_for(period.year, 2)
    return period_for(period.year + 1, 1)
