"""
Production signal ingestion — resolve → split → persist → reconcile.

Called by the device-facing /alarm endpoint. The acknowledgment goes back
only after the Log Writer has committed every lane row for the signal,
so a device that times out can always resend. The dedup key turns that
resend into a no-op.

Nothing about the machine's configuration can fail a request:
  - unknown machine        → logged, still ingested
  - no active assignment   → sentinel SKU (UNKNOWN)
  - implausible clock      → receipt time, clock_corrected=True
  - ledger write fails     → logged, left for the reconcile sweep

Only PersistenceFailure escapes to the caller (HTTP 500).
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from db.models import Machine, utcnow
from production.config_store import ActiveConfigurationStore
from production.errors import InvalidRequest, ReconciliationFailure
from production.log_writer import LogWriter, build_dedup_key
from production.reconciler import LedgerPosting, LedgerReconciler
from production.splitter import split

logger = structlog.get_logger()


@dataclass
class IngestResult:
    machine_id: str
    dedup_key: str
    product: str
    lanes: list[dict[str, Any]] = field(default_factory=list)
    duplicate: bool = False
    unresolved: bool = False
    clock_corrected: bool = False
    reconciliation: dict[str, Any] = field(default_factory=dict)

    @property
    def logged_lanes(self) -> int:
        return len(self.lanes)

    @property
    def log_ids(self) -> list[str]:
        return [lane["log_id"] for lane in self.lanes]


async def ingest_signal(
    db: AsyncSession,
    *,
    machine_id: str | None,
    pulse_count: int = 1,
    device_sequence: str | None = None,
    lane_id: int | None = None,
    event_time: datetime | None = None,
    received_time: datetime | None = None,
    settings: Settings | None = None,
    enqueue: Callable[[list[str]], None] | None = None,
) -> IngestResult:
    settings = settings or get_settings()
    if machine_id is None or not str(machine_id).strip():
        raise InvalidRequest("machine_id is required")
    machine_id = str(machine_id).strip()
    if pulse_count is None:
        pulse_count = 1
    if pulse_count < 0:
        raise InvalidRequest("pulse_count must be >= 0")
    if lane_id is not None and lane_id < 0:
        raise InvalidRequest("lane_id must be >= 0")
    received_time = received_time or utcnow()

    logger.info(
        "ingest.received",
        machine_id=machine_id,
        pulse_count=pulse_count,
        device_sequence=device_sequence,
        lane_id=lane_id,
    )

    if await db.get(Machine, machine_id) is None:
        logger.warning("ingest.unknown_machine", machine_id=machine_id)

    snapshot = await ActiveConfigurationStore(db, unknown_sku=settings.unknown_sku).resolve(machine_id)
    shares = split(pulse_count, snapshot.lanes, lane_id=lane_id, unknown_sku=settings.unknown_sku)

    dedup_key = build_dedup_key(
        machine_id,
        device_sequence=device_sequence,
        pulse_count=pulse_count,
        received_time=received_time,
        window_seconds=settings.dedup_window_seconds,
        lane_id=lane_id,
        device_time=event_time,
    )
    persisted = await LogWriter(db, settings).persist(
        dedup_key,
        machine_id,
        shares,
        pulse_count=pulse_count,
        received_time=received_time,
        device_time=event_time,
        device_sequence=device_sequence,
    )

    # Copy out before reconciling; a ledger rollback expires the ORM rows.
    postings = [LedgerPosting.from_log(entry) for entry in persisted.entries]
    lanes = [
        {"log_id": str(posting.log_id), "lane_id": posting.lane_id, "sku": posting.sku, "count": posting.count}
        for posting in postings
    ]
    result = IngestResult(
        machine_id=machine_id,
        dedup_key=dedup_key,
        product=lanes[0]["sku"] if lanes else snapshot.lanes[0].sku,
        lanes=lanes,
        duplicate=persisted.already_processed,
        unresolved=snapshot.unresolved,
        clock_corrected=any(entry.clock_corrected for entry in persisted.entries),
    )

    if postings:
        result.reconciliation = await _reconcile(db, postings, settings, enqueue)

    if result.duplicate:
        logger.info("ingest.duplicate", machine_id=machine_id, dedup_key=dedup_key)
    logger.info(
        "ingest.completed",
        machine_id=machine_id,
        product=result.product,
        logged_lanes=result.logged_lanes,
        duplicate=result.duplicate,
    )
    return result


async def _reconcile(
    db: AsyncSession,
    postings: list[LedgerPosting],
    settings: Settings,
    enqueue: Callable[[list[str]], None] | None,
) -> dict[str, Any]:
    log_ids = [str(posting.log_id) for posting in postings]

    if settings.reconcile_mode == "deferred":
        if enqueue is None:
            from workers.reconcile import enqueue_reconciliation as enqueue
        try:
            enqueue(log_ids)
        except Exception as exc:  # noqa: BLE001  broker down, the sweep picks these up
            logger.warning("reconcile.enqueue_failed", log_ids=log_ids, error=str(exc))
            return {"mode": "deferred", "queued": 0, "failed": len(log_ids)}
        return {"mode": "deferred", "queued": len(log_ids)}

    try:
        summary = await LedgerReconciler(db, settings).reconcile_many(postings)
    except (ReconciliationFailure, SQLAlchemyError) as exc:
        await db.rollback()
        logger.warning("reconcile.failed", log_ids=log_ids, error=str(exc))
        return {"mode": "sync", "created": 0, "noop": 0, "failed": len(log_ids)}
    summary.pop("errors", None)
    return {"mode": "sync", **summary}
