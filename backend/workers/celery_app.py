"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "memberrank",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.assessment"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.assessment.*": {"queue": "assessment"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # ── Half-year assessment ───────────────────────────────────
        # Runs just after a half closes and assesses the half that ended.
        "assess-previous-half-jan": {
            "task": "workers.assessment.run_half_yearly_assessment",
            "schedule": crontab(minute=0, hour=1, day_of_month=1, month_of_year=1),
            "options": {"queue": "assessment"},
        },
        "assess-previous-half-jul": {
            "task": "workers.assessment.run_half_yearly_assessment",
            "schedule": crontab(minute=0, hour=1, day_of_month=1, month_of_year=7),
            "options": {"queue": "assessment"},
        },
        # ── Review queue hygiene ───────────────────────────────────
        "expire-stale-assessments-monthly": {
            "task": "workers.assessment.expire_stale_assessments",
            "schedule": crontab(minute=30, hour=2, day_of_month=1),
            "options": {"queue": "assessment"},
        },
    },
)
