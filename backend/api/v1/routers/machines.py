"""
Machines Router — machine registry (id, factory, lane layout).

Read-mostly collaborator for the operator UI; the ingestion pipeline does
not require a machine to be registered.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db
from db.models import ActiveProductAssignment, IoTDeviceConfig, Machine

router = APIRouter(prefix="/api/v1/machines", tags=["machines"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class MachineCreate(BaseModel):
    machine_id: str = Field(..., min_length=1, max_length=50)
    factory_id: str = Field(..., min_length=1, max_length=50)
    name: str | None = None
    lane_count: int = Field(1, ge=1)
    expected_cycle_seconds: int | None = Field(None, gt=0)


class LaneResponse(BaseModel):
    lane_id: int
    product_sku: str


class MachineResponse(BaseModel):
    machine_id: str
    factory_id: str
    name: str | None
    lane_count: int
    expected_cycle_seconds: int | None
    status: str
    created_at: datetime
    lanes: list[LaneResponse] = []
    last_heartbeat: datetime | None = None


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("", response_model=list[MachineResponse])
async def list_machines(
    factory_id: str | None = None,
    status: str | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """List registered machines with their current lane assignments."""
    query = select(Machine)
    if factory_id:
        query = query.where(Machine.factory_id == factory_id)
    if status:
        query = query.where(Machine.status == status)
    query = query.order_by(Machine.machine_id).offset(skip).limit(limit)
    machines = (await db.execute(query)).scalars().all()
    context = await _build_machine_context(db, [m.machine_id for m in machines])
    return [_serialize_machine(machine, context) for machine in machines]


@router.get("/{machine_id}", response_model=MachineResponse)
async def get_machine(
    machine_id: str,
    db: AsyncSession = Depends(get_db),
):
    machine = await db.get(Machine, machine_id)
    if not machine:
        raise HTTPException(status_code=404, detail="Machine not found")
    context = await _build_machine_context(db, [machine.machine_id])
    return _serialize_machine(machine, context)


@router.post("", response_model=MachineResponse, status_code=201)
async def register_machine(
    machine: MachineCreate,
    db: AsyncSession = Depends(get_db),
):
    """Register a machine."""
    if await db.get(Machine, machine.machine_id) is not None:
        raise HTTPException(status_code=409, detail="Machine already registered")
    db_machine = Machine(**machine.model_dump())
    db.add(db_machine)
    await db.commit()
    await db.refresh(db_machine)
    return _serialize_machine(db_machine, {})


def _serialize_machine(machine: Machine, context: dict[str, dict]) -> dict:
    ctx = context.get(machine.machine_id, {})
    return {
        "machine_id": machine.machine_id,
        "factory_id": machine.factory_id,
        "name": machine.name,
        "lane_count": machine.lane_count,
        "expected_cycle_seconds": machine.expected_cycle_seconds,
        "status": machine.status,
        "created_at": machine.created_at,
        "lanes": ctx.get("lanes", []),
        "last_heartbeat": ctx.get("last_heartbeat"),
    }


async def _build_machine_context(db: AsyncSession, machine_ids: list[str]) -> dict[str, dict]:
    """Lane assignments plus the latest controller heartbeat per machine."""
    if not machine_ids:
        return {}

    context: dict[str, dict] = {mid: {"lanes": [], "last_heartbeat": None} for mid in machine_ids}

    lanes_result = await db.execute(
        select(
            ActiveProductAssignment.machine_id,
            ActiveProductAssignment.lane_id,
            ActiveProductAssignment.product_sku,
        )
        .where(ActiveProductAssignment.machine_id.in_(machine_ids))
        .order_by(ActiveProductAssignment.machine_id, ActiveProductAssignment.lane_id)
    )
    for row in lanes_result.all():
        context[row.machine_id]["lanes"].append({"lane_id": row.lane_id, "product_sku": row.product_sku})

    heartbeat_result = await db.execute(
        select(IoTDeviceConfig.machine_id, func.max(IoTDeviceConfig.last_heartbeat).label("last_heartbeat"))
        .where(IoTDeviceConfig.machine_id.in_(machine_ids))
        .group_by(IoTDeviceConfig.machine_id)
    )
    for row in heartbeat_result.all():
        context[row.machine_id]["last_heartbeat"] = row.last_heartbeat

    return context
