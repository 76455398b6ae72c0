"""
Ingest Router — device-facing production signal endpoint.

Endpoints:
  POST /api/v1/ingest/alarm — one raw pulse/alarm signal from a controller
    (also reachable as /alarm and /iot_test)

Devices only ever see 200 (logged, possibly as a duplicate or against the
UNKNOWN sku) or a 4xx/5xx telling them to fix or resend the request.
"""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db
from production.errors import PersistenceFailure
from production.ingestion import ingest_signal

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/ingest", tags=["ingest"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AlarmRequest(BaseModel):
    machine_id: str = Field(..., max_length=50)
    pulse_count: int | None = Field(1, ge=0, validation_alias=AliasChoices("pulse_count", "alarm_count"))
    device_sequence: str | None = Field(None, max_length=100)
    lane_id: int | None = Field(None, ge=0)
    event_time: datetime | None = None

    @field_validator("machine_id")
    @classmethod
    def machine_id_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("machine_id is required")
        return value


class LaneLogged(BaseModel):
    log_id: str
    lane_id: int
    sku: str
    count: int


class AlarmResponse(BaseModel):
    status: str = "ok"
    product: str
    logged_lanes: int
    duplicate: bool
    unresolved: bool
    clock_corrected: bool
    lanes: list[LaneLogged]


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/alarm", response_model=AlarmResponse)
async def receive_alarm(
    payload: AlarmRequest,
    db: AsyncSession = Depends(get_db),
):
    """Resolve, split and durably log one controller signal."""
    try:
        result = await ingest_signal(
            db,
            machine_id=payload.machine_id,
            pulse_count=1 if payload.pulse_count is None else payload.pulse_count,
            device_sequence=payload.device_sequence,
            lane_id=payload.lane_id,
            event_time=payload.event_time,
        )
    except SQLAlchemyError as exc:
        # Could not even read configuration; durability is not guaranteed.
        await db.rollback()
        raise PersistenceFailure(str(exc)) from exc

    return AlarmResponse(
        product=result.product,
        logged_lanes=result.logged_lanes,
        duplicate=result.duplicate,
        unresolved=result.unresolved,
        clock_corrected=result.clock_corrected,
        lanes=[LaneLogged(**lane) for lane in result.lanes],
    )
