"""
Production Monitoring Workers.

Workers:
  1. scan_production_anomalies: Gap / burst / clock scan over recent
     production_logs for every machine that reported in the lookback window.

Output is advisory (production_anomalies) and replaced on every run.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.monitoring.scan_production_anomalies",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
)
def scan_production_anomalies(self, lookback_hours: int | None = None, machine_id: str | None = None):
    run_id = self.request.id or "manual"
    logger.info("anomaly.scan.started", machine_id=machine_id, run_id=run_id)

    async def _scan():
        from core.config import get_settings
        from production.anomalies import scan_all_machines, scan_machine

        settings = get_settings()
        hours = lookback_hours or settings.anomaly_lookback_hours
        since = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=hours)
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                if machine_id:
                    findings = await scan_machine(db, machine_id, since, settings=settings)
                    return {"machines_scanned": 1, "findings": len(findings), "since": since.isoformat()}
                return await scan_all_machines(db, since, settings=settings)
        finally:
            await engine.dispose()

    try:
        summary = asyncio.run(_scan())
    except Exception as exc:
        logger.error("anomaly.scan.failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
    return {"status": "success", "run_id": run_id, **summary}
