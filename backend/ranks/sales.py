"""
Sales Aggregator — period sales lookup consumed by the assessment engine.

The engine depends only on the SalesAggregator protocol. DbSalesAggregator
is the default implementation over manager_monthly_sales; it opens its own
short-lived session per call so concurrent batch workers never share one.
"""

from __future__ import annotations

import uuid
from datetime import date
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models import ManagerMonthlySales
from ranks.errors import DependencyFailure, InvalidArgument
from ranks.periods import AssessmentPeriod


class SalesAggregator(Protocol):
    async def total_sales(self, user_id: uuid.UUID, period_start: date, period_end: date) -> int:
        """Total qualifying sales for the user inside [period_start, period_end]."""
        ...


def months_between(period_start: date, period_end: date) -> list[str]:
    """Inclusive 'YYYY-MM' keys covering the window."""
    if period_end < period_start:
        raise InvalidArgument("period_end is before period_start")
    months = []
    year, month = period_start.year, period_start.month
    while (year, month) <= (period_end.year, period_end.month):
        months.append(f"{year}-{month:02d}")
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return months


class DbSalesAggregator:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def total_sales(self, user_id: uuid.UUID, period_start: date, period_end: date) -> int:
        months = months_between(period_start, period_end)
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(func.coalesce(func.sum(ManagerMonthlySales.sales_amount), 0)).where(
                        ManagerMonthlySales.user_id == user_id,
                        ManagerMonthlySales.month.in_(months),
                    )
                )
                return int(result.scalar() or 0)
        except SQLAlchemyError as exc:
            raise DependencyFailure("Sales data is currently unavailable", user_id=str(user_id)) from exc

    async def monthly_breakdown(self, user_id: uuid.UUID, period: AssessmentPeriod) -> list[dict]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ManagerMonthlySales)
                .where(
                    ManagerMonthlySales.user_id == user_id,
                    ManagerMonthlySales.month.in_(period.months()),
                )
                .order_by(ManagerMonthlySales.month)
            )
            return [
                {
                    "month": row.month,
                    "sales_amount": row.sales_amount,
                    "insured_count": row.insured_count,
                }
                for row in result.scalars().all()
            ]
