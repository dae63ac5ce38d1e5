"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "stocksentry",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.automation", "workers.scheduler"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.timezone,
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.automation.*": {"queue": "automation"},
        "workers.scheduler.*": {"queue": "automation"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # ── Scheduled Tasks ────────────────────────────────────────
        # One tick covers every tenant. Ticks are exclusive across workers only
        # with the redis lock backend, which non-local environments must use.
        "run-task-scheduler": {
            "task": "workers.automation.run_scheduler_tick",
            "schedule": crontab(minute=f"*/{settings.scheduler_interval_minutes}"),
            "options": {"queue": "automation"},
        },
        # ── Alert Checks ───────────────────────────────────────────
        "alert-check-hourly": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(minute=0),
            "kwargs": {"task_name": "workers.automation.run_alert_check"},
            "options": {"queue": "automation"},
        },
    },
)

