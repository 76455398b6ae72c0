"""
Ledger Reconciliation Workers.

Workers:
  1. reconcile_log_rows: Post specific production_logs rows to the ledger
     (enqueued by ingestion when RECONCILE_MODE=deferred)
  2. sweep_unreconciled: Find log rows with no ledger entry and post them
     (beat, every 5 minutes; recovers crashes between log write and reconcile)

Both are safe to run any number of times: ledger writes are unique on
(ref_doc, lane_id).
"""

import asyncio

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


def enqueue_reconciliation(log_ids: list[str]) -> None:
    celery_app.send_task("workers.reconcile.reconcile_log_rows", kwargs={"log_ids": list(log_ids)})


@celery_app.task(
    name="workers.reconcile.reconcile_log_rows",
    bind=True,
    max_retries=5,
    default_retry_delay=30,
    acks_late=True,
)
def reconcile_log_rows(self, log_ids: list[str]):
    run_id = self.request.id or "manual"
    logger.info("reconcile.rows.started", count=len(log_ids), run_id=run_id)

    async def _run():
        from core.config import get_settings
        from production.reconciler import reconcile_log_ids

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                return await reconcile_log_ids(db, log_ids, settings=settings)
        finally:
            await engine.dispose()

    try:
        summary = asyncio.run(_run())
    except Exception as exc:
        logger.error("reconcile.rows.failed", error=str(exc), run_id=run_id)
        raise self.retry(exc=exc)

    if summary["failed"]:
        logger.warning("reconcile.rows.partial", failed=summary["failed"], run_id=run_id)
    return {"status": "success" if not summary["failed"] else "partial", **summary}


@celery_app.task(
    name="workers.reconcile.sweep_unreconciled",
    bind=True,
    max_retries=1,
    default_retry_delay=60,
)
def sweep_unreconciled(self, limit: int = 500):
    run_id = self.request.id or "manual"
    logger.info("reconcile.sweep.started", limit=limit, run_id=run_id)

    async def _run():
        from core.config import get_settings
        from production.reconciler import reconcile_pending

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                return await reconcile_pending(db, limit=limit, settings=settings)
        finally:
            await engine.dispose()

    try:
        summary = asyncio.run(_run())
    except Exception as exc:
        logger.error("reconcile.sweep.failed", error=str(exc), run_id=run_id)
        raise
    return {"status": "success" if not summary["failed"] else "partial", "run_id": run_id, **summary}
