"""
Idempotent Log Writer — persist each ingested signal exactly once.

Every lane row of one signal shares a dedup_key, and (dedup_key, lane_id)
is unique in production_logs. A replayed key returns the rows already
written instead of inserting new ones. Rows for one signal are committed
as a single batch, so readers never see a partial split.

Device clocks are not trusted: a timestamp before the clock floor (an
unsynced controller after reboot reports 1970) or too far in the future
is replaced by the server receipt time and the row is marked
clock_corrected.
"""

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from db.models import ProductionLog
from production.errors import PersistenceFailure
from production.splitter import LaneCount

logger = structlog.get_logger()


@dataclass
class PersistResult:
    entries: list[ProductionLog] = field(default_factory=list)
    already_processed: bool = False


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def build_dedup_key(
    machine_id: str,
    *,
    device_sequence: str | None,
    pulse_count: int,
    received_time: datetime,
    window_seconds: int,
    lane_id: int | None = None,
    device_time: datetime | None = None,
) -> str:
    """
    Stable key identifying one device signal.

    With a device_sequence the key is exact. Without one, the raw device
    timestamp identifies the pulse: buffered pulses flushed together on
    reconnect carry distinct device times and stay distinct, while a resend
    of the same pulse repeats its device time. Only when neither is sent does
    the key fall back to (machine, count, receipt time floored to
    window_seconds).
    """
    if device_sequence:
        material = f"{machine_id}|seq|{device_sequence}"
    elif device_time is not None:
        material = f"{machine_id}|dev|{pulse_count}|{to_naive_utc(device_time).isoformat()}"
    else:
        epoch = int(to_naive_utc(received_time).replace(tzinfo=timezone.utc).timestamp())
        bucket = epoch - (epoch % max(1, window_seconds))
        material = f"{machine_id}|cnt|{pulse_count}|{bucket}"
    if lane_id is not None:
        material = f"{material}|lane|{lane_id}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def normalize_event_time(
    device_time: datetime | None,
    received_time: datetime,
    *,
    floor: datetime,
    future_tolerance_seconds: int,
) -> tuple[datetime, bool]:
    """Return (event_time, clock_corrected)."""
    device_time = to_naive_utc(device_time)
    received_time = to_naive_utc(received_time)
    if device_time is None:
        return received_time, False
    if device_time < to_naive_utc(floor):
        return received_time, True
    if device_time > received_time + timedelta(seconds=future_tolerance_seconds):
        return received_time, True
    return device_time, False


class LogWriter:
    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()

    async def persist(
        self,
        dedup_key: str,
        machine_id: str,
        shares: Sequence[LaneCount],
        *,
        pulse_count: int,
        received_time: datetime,
        device_time: datetime | None = None,
        device_sequence: str | None = None,
    ) -> PersistResult:
        """Write one row per lane share, or return the rows already written for dedup_key."""
        existing = await self.find(dedup_key)
        if existing:
            logger.info("log_writer.duplicate", machine_id=machine_id, dedup_key=dedup_key, rows=len(existing))
            return PersistResult(entries=existing, already_processed=True)

        if not shares:
            return PersistResult()

        received_time = to_naive_utc(received_time)
        event_time, clock_corrected = normalize_event_time(
            device_time,
            received_time,
            floor=self.settings.clock_floor,
            future_tolerance_seconds=self.settings.clock_future_tolerance_seconds,
        )
        if clock_corrected:
            logger.warning(
                "log_writer.clock_corrected",
                machine_id=machine_id,
                device_time=str(device_time),
                received_time=received_time.isoformat(),
            )

        rows = [
            ProductionLog(
                machine_id=machine_id,
                lane_id=share.lane_id,
                product_sku=share.sku,
                count=share.count,
                pulse_count=pulse_count,
                event_time=event_time,
                received_time=received_time,
                device_time=to_naive_utc(device_time),
                clock_corrected=clock_corrected,
                dedup_key=dedup_key,
                device_sequence=device_sequence,
            )
            for share in shares
        ]
        self.db.add_all(rows)
        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same signal committed first.
            await self.db.rollback()
            existing = await self.find(dedup_key)
            if existing:
                logger.info("log_writer.duplicate_race", machine_id=machine_id, dedup_key=dedup_key)
                return PersistResult(entries=existing, already_processed=True)
            raise PersistenceFailure(f"production log batch rejected for {machine_id}")
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("log_writer.failed", machine_id=machine_id, dedup_key=dedup_key, error=str(exc))
            raise PersistenceFailure(str(exc)) from exc

        logger.info(
            "log_writer.persisted",
            machine_id=machine_id,
            dedup_key=dedup_key,
            lanes=[row.lane_id for row in rows],
            counts=[row.count for row in rows],
        )
        return PersistResult(entries=rows)

    async def find(self, dedup_key: str) -> list[ProductionLog]:
        result = await self.db.execute(
            select(ProductionLog).where(ProductionLog.dedup_key == dedup_key).order_by(ProductionLog.lane_id)
        )
        return list(result.scalars().all())
