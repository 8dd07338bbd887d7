"""
Assessment Worker — scheduled half-year assessment and queue expiry.

run_half_yearly_assessment:
  Executes the assessment batch for a period (by default the half that
  just ended) as the "system" operator. Results land as PENDING rows for
  human review; nothing here changes a manager's range.

expire_stale_assessments:
  Marks PENDING assessments older than the retention window as EXPIRED so
  stale proposals cannot be confirmed against newer sales.

Schedule: Jan 1 / Jul 1 at 01:00 UTC (assessment), monthly (expiry)
Queue: assessment
"""

import asyncio
from datetime import datetime

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()

SYSTEM_OPERATOR = "system"


@celery_app.task(
    name="workers.assessment.run_half_yearly_assessment",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def run_half_yearly_assessment(self, year: int | None = None, half: int | None = None):
    """
    Assess every active manager for one half-year period.

    Safe to retry: managers already assessed for the period are skipped.
    """
    if (year is None) != (half is None):
        from ranks.errors import InvalidArgument

        raise InvalidArgument("Provide both year and half, or neither", year=year, half=half)

    run_id = self.request.id or "manual"
    logger.info("assessment_worker.started", run_id=run_id, year=year, half=half)

    async def _run():
        from core.config import get_settings
        from db.session import build_engine, build_session_factory
        from ranks.assessment import execute_assessment
        from ranks.periods import current_period, period_for, previous_period
        from ranks.sales import DbSalesAggregator

        settings = get_settings()
        now = datetime.utcnow()
        if year is not None and half is not None:
            period = period_for(year, half)
        else:
            period = previous_period(current_period(now))

        engine = build_engine(settings.database_url, pooled=False)
        try:
            session_factory = build_session_factory(engine)
            summary = await execute_assessment(
                session_factory,
                period=period,
                executed_by=SYSTEM_OPERATOR,
                sales=DbSalesAggregator(session_factory),
                now=now,
                max_workers=settings.rank_assessment_max_workers,
                timeout_seconds=settings.rank_assessment_timeout_seconds,
            )
        finally:
            await engine.dispose()

        result = summary.to_dict()
        result.pop("results")
        result["status"] = "timed_out" if summary.timed_out else "success"
        result["run_id"] = run_id
        logger.info("assessment_worker.completed", **result)
        return result

    try:
        return asyncio.run(_run())
    except Exception as exc:
        logger.error("assessment_worker.failed", run_id=run_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.assessment.expire_stale_assessments",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def expire_stale_assessments(self):
    """Expire PENDING assessments that fell outside the retention window."""
    run_id = self.request.id or "manual"

    async def _expire():
        from core.config import get_settings
        from db.session import build_engine, build_session_factory
        from ranks.periods import current_period
        from ranks.workflow import expire_stale_assessments as expire

        settings = get_settings()
        current = current_period(datetime.utcnow())

        engine = build_engine(settings.database_url, pooled=False)
        try:
            async with build_session_factory(engine)() as db:
                expired = await expire(
                    db, current=current, keep_periods=settings.rank_pending_retention_periods
                )
        finally:
            await engine.dispose()

        summary = {"status": "success", "expired": expired, "current_period": current.label, "run_id": run_id}
        logger.info("assessment_worker.expired", **summary)
        return summary

    try:
        return asyncio.run(_expire())
    except Exception as exc:
        logger.error("assessment_worker.expire_failed", run_id=run_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
