"""
Production Logs Router — read-only view of ingested per-lane counts.

Rows with sku=UNKNOWN or clock_corrected=true are the operator review queue.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db
from db.models import ProductionLog

router = APIRouter(prefix="/api/v1/production", tags=["production"])


class ProductionLogResponse(BaseModel):
    id: UUID
    machine_id: str
    lane_id: int
    product_sku: str
    count: int
    pulse_count: int
    event_time: datetime
    received_time: datetime
    device_time: datetime | None
    clock_corrected: bool
    device_sequence: str | None

    model_config = {"from_attributes": True}


@router.get("/logs", response_model=list[ProductionLogResponse])
async def list_production_logs(
    machine_id: str | None = None,
    sku: str | None = None,
    clock_corrected: bool | None = None,
    since: datetime | None = None,
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    query = select(ProductionLog)
    if machine_id:
        query = query.where(ProductionLog.machine_id == machine_id)
    if sku:
        query = query.where(ProductionLog.product_sku == sku)
    if clock_corrected is not None:
        query = query.where(ProductionLog.clock_corrected == clock_corrected)
    if since:
        query = query.where(ProductionLog.event_time >= since)
    query = query.order_by(ProductionLog.event_time.desc(), ProductionLog.lane_id).limit(limit)
    result = await db.execute(query)
    return result.scalars().all()
