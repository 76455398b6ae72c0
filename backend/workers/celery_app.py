"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "floorledger",
    broker=settings.redis_url,
    backend=settings.redis_url,
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
        "workers.reconcile.*": {"queue": "ledger"},
        "workers.monitoring.*": {"queue": "monitoring"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # Safety net for rows whose inline/queued reconciliation never landed
        "sweep-unreconciled-5m": {
            "task": "workers.reconcile.sweep_unreconciled",
            "schedule": crontab(minute="*/5"),
            "options": {"queue": "ledger"},
        },
        "scan-production-anomalies-30m": {
            "task": "workers.monitoring.scan_production_anomalies",
            "schedule": crontab(minute="*/30"),
            "options": {"queue": "monitoring"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
