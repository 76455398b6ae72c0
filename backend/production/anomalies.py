"""
Production Anomaly Detection — gap and clock analysis over production_logs.

Detects, per machine:
  - MissedCycle:   inter-arrival gap > expected_cycle × gap_factor
  - BufferedBurst: a gap followed by ≥ burst_min_events signals arriving
                   < burst_interval apart. The controller lost connectivity,
                   buffered its pulses and flushed them on reconnect: the
                   data is present, only the timestamps are upload-time.
  - ClockInvalid:  rows whose device clock was rejected at ingestion

Lane rows of one signal share a dedup_key and are collapsed into a single
event first, otherwise every dual-lane split would look like a burst.

detect_anomalies() is a pure scan and never touches the database.
scan_machine() reads history, runs the scan and replaces the persisted
advisory rows for that window. Nothing in ingestion or the ledger
depends on its output.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import pandas as pd
import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from db.models import Machine, ProductionAnomaly, ProductionLog, utcnow

logger = structlog.get_logger()

MISSED_CYCLE = "MissedCycle"
BUFFERED_BURST = "BufferedBurst"
CLOCK_INVALID = "ClockInvalid"
ANOMALY_KINDS = (MISSED_CYCLE, BUFFERED_BURST, CLOCK_INVALID)


@dataclass(frozen=True)
class AnomalyFinding:
    machine_id: str
    kind: str
    window_start: datetime
    window_end: datetime
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "machine_id": self.machine_id,
            "kind": self.kind,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "detail": self.detail,
        }


# ── Pure scan ───────────────────────────────────────────────────────────────


def _event_frame(entries: Iterable[ProductionLog]) -> pd.DataFrame:
    rows = [
        {
            "machine_id": entry.machine_id,
            "dedup_key": entry.dedup_key,
            "event_time": entry.event_time,
            "device_time": entry.device_time,
            "clock_corrected": bool(entry.clock_corrected),
            "units": int(entry.count),
        }
        for entry in entries
    ]
    if not rows:
        return pd.DataFrame()

    df = pd.DataFrame(rows)
    df["event_time"] = pd.to_datetime(df["event_time"])
    events = df.groupby(["machine_id", "dedup_key"], as_index=False).agg(
        event_time=("event_time", "min"),
        device_time=("device_time", "first"),
        clock_corrected=("clock_corrected", "max"),
        units=("units", "sum"),
    )
    return events.sort_values(["machine_id", "event_time"], kind="stable").reset_index(drop=True)


def _scan_gaps(
    machine_id: str,
    events: pd.DataFrame,
    expected_cycle_seconds: float,
    gap_factor: float,
    burst_interval_seconds: float,
    burst_min_events: int,
) -> list[AnomalyFinding]:
    threshold = expected_cycle_seconds * gap_factor
    times = events["event_time"]
    gaps = times.diff().dt.total_seconds()
    findings: list[AnomalyFinding] = []

    for idx in events.index[gaps > threshold]:
        gap_start = times.iloc[idx - 1].to_pydatetime()
        gap_end = times.iloc[idx].to_pydatetime()
        gap_seconds = float(gaps.iloc[idx])

        end = idx + 1
        while end < len(events) and gaps.iloc[end] < burst_interval_seconds:
            end += 1
        burst_events = end - idx

        if burst_events >= burst_min_events:
            findings.append(
                AnomalyFinding(
                    machine_id=machine_id,
                    kind=BUFFERED_BURST,
                    window_start=gap_start,
                    window_end=gap_end,
                    detail={
                        "gap_seconds": gap_seconds,
                        "burst_events": int(burst_events),
                        "burst_units": int(events["units"].iloc[idx:end].sum()),
                        "burst_end": times.iloc[end - 1].to_pydatetime().isoformat(),
                        "note": "data present; timestamps are upload time, not event time",
                    },
                )
            )
        else:
            findings.append(
                AnomalyFinding(
                    machine_id=machine_id,
                    kind=MISSED_CYCLE,
                    window_start=gap_start,
                    window_end=gap_end,
                    detail={
                        "gap_seconds": gap_seconds,
                        "expected_cycle_seconds": float(expected_cycle_seconds),
                        "missed_cycles": max(1, int(gap_seconds // expected_cycle_seconds) - 1),
                    },
                )
            )
    return findings


def _scan_clock(machine_id: str, events: pd.DataFrame) -> list[AnomalyFinding]:
    findings = []
    for row in events[events["clock_corrected"]].itertuples(index=False):
        at = row.event_time.to_pydatetime()
        device_time = row.device_time
        findings.append(
            AnomalyFinding(
                machine_id=machine_id,
                kind=CLOCK_INVALID,
                window_start=at,
                window_end=at,
                detail={
                    "dedup_key": row.dedup_key,
                    "device_time": device_time.isoformat() if pd.notna(device_time) else None,
                    "units": int(row.units),
                },
            )
        )
    return findings


def detect_anomalies(
    entries: Iterable[ProductionLog],
    *,
    expected_cycle_seconds: float | Mapping[str, float],
    gap_factor: float = 1.6,
    burst_interval_seconds: float = 2.0,
    burst_min_events: int = 3,
) -> list[AnomalyFinding]:
    """
    Scan production log rows and return advisory findings.

    expected_cycle_seconds is either one value for every machine or a
    {machine_id: seconds} mapping.
    """
    df = _event_frame(entries)
    if df.empty:
        return []

    findings: list[AnomalyFinding] = []
    for machine_id, events in df.groupby("machine_id", sort=True):
        events = events.reset_index(drop=True)
        if isinstance(expected_cycle_seconds, Mapping):
            cycle = float(expected_cycle_seconds[machine_id])
        else:
            cycle = float(expected_cycle_seconds)
        findings.extend(
            _scan_gaps(machine_id, events, cycle, gap_factor, burst_interval_seconds, burst_min_events)
        )
        findings.extend(_scan_clock(machine_id, events))

    return sorted(findings, key=lambda f: (f.machine_id, f.window_start, f.kind))


# ── DB-backed scans ─────────────────────────────────────────────────────────


async def expected_cycle_for(db: AsyncSession, machine_id: str, settings: Settings | None = None) -> float:
    settings = settings or get_settings()
    machine = await db.get(Machine, machine_id)
    if machine is not None and machine.expected_cycle_seconds:
        return float(machine.expected_cycle_seconds)
    return float(settings.default_expected_cycle_seconds)


async def scan_machine(
    db: AsyncSession,
    machine_id: str,
    since: datetime | None = None,
    *,
    persist: bool = True,
    settings: Settings | None = None,
) -> list[AnomalyFinding]:
    """Scan one machine's history since `since` and optionally store the results."""
    settings = settings or get_settings()
    since = since or utcnow() - timedelta(hours=settings.anomaly_lookback_hours)

    result = await db.execute(
        select(ProductionLog)
        .where(ProductionLog.machine_id == machine_id, ProductionLog.event_time >= since)
        .order_by(ProductionLog.event_time, ProductionLog.lane_id)
    )
    entries = list(result.scalars().all())
    findings = detect_anomalies(
        entries,
        expected_cycle_seconds=await expected_cycle_for(db, machine_id, settings),
        gap_factor=settings.gap_factor,
        burst_interval_seconds=settings.burst_interval_seconds,
        burst_min_events=settings.burst_min_events,
    )

    if persist:
        await db.execute(
            delete(ProductionAnomaly).where(
                ProductionAnomaly.machine_id == machine_id,
                ProductionAnomaly.window_start >= since,
            )
        )
        db.add_all(
            ProductionAnomaly(
                machine_id=f.machine_id,
                kind=f.kind,
                window_start=f.window_start,
                window_end=f.window_end,
                detail=f.detail,
            )
            for f in findings
        )
        await db.commit()

    logger.info(
        "anomaly.scan.machine",
        machine_id=machine_id,
        entries=len(entries),
        findings=len(findings),
    )
    return findings


async def scan_all_machines(
    db: AsyncSession,
    since: datetime | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    settings = settings or get_settings()
    since = since or utcnow() - timedelta(hours=settings.anomaly_lookback_hours)
    result = await db.execute(
        select(ProductionLog.machine_id).where(ProductionLog.event_time >= since).distinct()
    )
    machine_ids = sorted(row.machine_id for row in result.all())

    by_kind = {kind: 0 for kind in ANOMALY_KINDS}
    for machine_id in machine_ids:
        for finding in await scan_machine(db, machine_id, since, settings=settings):
            by_kind[finding.kind] += 1

    summary = {"machines_scanned": len(machine_ids), "by_kind": by_kind, "since": since.isoformat()}
    logger.info("anomaly.scan.completed", **summary)
    return summary
