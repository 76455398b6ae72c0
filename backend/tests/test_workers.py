import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import Settings
from db.models import Machine, ProductionAnomaly, ProductionLog, StockLedgerEntry
from db.session import Base
from workers.monitoring import scan_production_anomalies
from workers.reconcile import enqueue_reconciliation, reconcile_log_rows, sweep_unreconciled


def _log(key: str, at: datetime, machine_id: str = "T1.1-M03", count: int = 1) -> ProductionLog:
    return ProductionLog(
        machine_id=machine_id,
        lane_id=1,
        product_sku="SKU-C",
        count=count,
        pulse_count=count,
        event_time=at,
        received_time=at,
        dedup_key=key,
    )


def _setup(tmp_path, monkeypatch, name: str, rows: list) -> tuple[str, list[str]]:
    db_url = f"sqlite+aiosqlite:///{tmp_path / name}"

    async def _seed() -> list[str]:
        engine = create_async_engine(db_url, echo=False)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with session_factory() as db:
                db.add_all(rows)
                await db.commit()
                return [str(row.id) for row in rows if isinstance(row, ProductionLog)]
        finally:
            await engine.dispose()

    log_ids = asyncio.run(_seed())
    monkeypatch.setattr("core.config.get_settings", lambda: Settings(database_url=db_url))
    return db_url, log_ids


def _count(db_url: str, model) -> int:
    async def _run() -> int:
        engine = create_async_engine(db_url, echo=False)
        try:
            async with engine.connect() as conn:
                return await conn.scalar(select(func.count()).select_from(model))
        finally:
            await engine.dispose()

    return asyncio.run(_run())


def test_sweep_unreconciled_posts_orphaned_logs(tmp_path, monkeypatch):
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    db_url, _ = _setup(tmp_path, monkeypatch, "sweep.db", [_log("a", now), _log("b", now, count=3)])

    result = sweep_unreconciled.run(limit=100)
    assert result["status"] == "success"
    assert result["scanned"] == 2
    assert result["created"] == 2
    assert _count(db_url, StockLedgerEntry) == 2

    rerun = sweep_unreconciled.run(limit=100)
    assert rerun["scanned"] == 0
    assert _count(db_url, StockLedgerEntry) == 2


def test_reconcile_log_rows_is_idempotent(tmp_path, monkeypatch):
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    db_url, log_ids = _setup(tmp_path, monkeypatch, "rows.db", [_log("only", now)])

    first = reconcile_log_rows.run(log_ids=log_ids)
    second = reconcile_log_rows.run(log_ids=log_ids)
    assert first["created"] == 1
    assert second["noop"] == 1
    assert _count(db_url, StockLedgerEntry) == 1


def test_enqueue_reconciliation_sends_named_task(monkeypatch):
    sent: list[tuple[str, dict]] = []

    def _capture_send_task(task_name: str, kwargs: dict):
        sent.append((task_name, kwargs))

    monkeypatch.setattr("workers.reconcile.celery_app.send_task", _capture_send_task)
    enqueue_reconciliation(["id-1", "id-2"])
    assert sent == [("workers.reconcile.reconcile_log_rows", {"log_ids": ["id-1", "id-2"]})]


def test_scan_production_anomalies_persists_findings(tmp_path, monkeypatch):
    start = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=3)
    rows = [
        Machine(machine_id="T1.1-M03", factory_id="T1", expected_cycle_seconds=300),
        _log("s0", start),
        _log("s1", start + timedelta(seconds=300)),
        _log("s2", start + timedelta(seconds=3600)),
    ]
    db_url, _ = _setup(tmp_path, monkeypatch, "scan.db", rows)

    result = scan_production_anomalies.run(lookback_hours=6)
    assert result["status"] == "success"
    assert result["machines_scanned"] == 1
    assert result["by_kind"]["MissedCycle"] == 1
    assert _count(db_url, ProductionAnomaly) == 1
