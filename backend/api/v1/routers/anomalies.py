"""
Anomalies API — advisory gap / burst / clock findings per machine.

Endpoints:
  GET  /api/v1/anomalies — List persisted anomalies (filter by machine, kind)
  POST /api/v1/anomalies/scan — Run the detector now and persist its output
"""

from datetime import timedelta
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db
from core.config import get_settings
from db.models import ProductionAnomaly, utcnow
from production.anomalies import ANOMALY_KINDS, scan_all_machines, scan_machine

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/anomalies", tags=["anomalies"])


class ScanRequest(BaseModel):
    machine_id: str | None = None
    lookback_hours: int | None = Field(None, ge=1, le=24 * 31)


@router.get("")
async def list_anomalies(
    machine_id: str | None = None,
    kind: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    """
    List detected anomalies, newest window first.

    Query params:
      - machine_id
      - kind: 'MissedCycle', 'BufferedBurst', 'ClockInvalid'
    """
    if kind and kind not in ANOMALY_KINDS:
        raise HTTPException(status_code=400, detail=f"kind must be one of {', '.join(ANOMALY_KINDS)}")

    query = select(ProductionAnomaly)
    if machine_id:
        query = query.where(ProductionAnomaly.machine_id == machine_id)
    if kind:
        query = query.where(ProductionAnomaly.kind == kind)
    query = query.order_by(ProductionAnomaly.window_start.desc()).limit(limit)
    anomalies = (await db.execute(query)).scalars().all()

    return [
        {
            "anomaly_id": str(anom.anomaly_id),
            "machine_id": anom.machine_id,
            "kind": anom.kind,
            "window_start": anom.window_start.isoformat(),
            "window_end": anom.window_end.isoformat(),
            "detail": anom.detail,
            "detected_at": anom.detected_at.isoformat(),
        }
        for anom in anomalies
    ]


@router.post("/scan")
async def trigger_scan(
    request: ScanRequest,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    settings = get_settings()
    since = utcnow() - timedelta(hours=request.lookback_hours or settings.anomaly_lookback_hours)

    if request.machine_id:
        findings = await scan_machine(db, request.machine_id, since)
        return {
            "machines_scanned": 1,
            "since": since.isoformat(),
            "anomalies": [finding.to_dict() for finding in findings],
        }

    logger.info("anomaly.scan.manual", since=since.isoformat())
    return await scan_all_machines(db, since)
