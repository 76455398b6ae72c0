"""
IoT Router — controller configuration handshake.

Endpoints:
  GET /api/v1/iot/config?mac=... — firmware pulls its machine/lane binding,
      current SKU, yield and debounce (also reachable as /iot). Unknown
      MACs are auto-registered and wait for an operator to assign them.
  PUT /api/v1/iot/devices/{mac} — operator binds a controller to a machine lane
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db
from core.config import get_settings
from db.models import IoTDeviceConfig, utcnow
from production.config_store import ActiveConfigurationStore

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/iot", tags=["iot"])

PENDING_ASSIGNMENT_NOTE = "Auto-registered - Pending Assignment"


class DeviceAssignment(BaseModel):
    machine_id: str = Field(..., min_length=1, max_length=50)
    lane_id: int | None = Field(None, ge=0)
    count_per_signal: int = Field(1, ge=1)
    debounce_ms: int = Field(240000, ge=0)
    firmware_version: str | None = None
    notes: str | None = None


async def _get_device(db: AsyncSession, mac: str) -> IoTDeviceConfig | None:
    result = await db.execute(select(IoTDeviceConfig).where(IoTDeviceConfig.mac_address == mac))
    return result.scalar_one_or_none()


@router.get("/config")
async def get_device_config(
    mac: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    settings = get_settings()
    if not mac or not mac.strip():
        raise HTTPException(status_code=400, detail="MAC address is required")
    mac = mac.strip().upper()

    device = await _get_device(db, mac)
    if device is None:
        db.add(IoTDeviceConfig(mac_address=mac, notes=PENDING_ASSIGNMENT_NOTE, last_heartbeat=utcnow()))
        await db.commit()
        logger.info("iot.device_registered", mac=mac)
        return {"status": "new_device", "yield": 1, "debounce": 240000, "sku": settings.unknown_sku}

    device.last_heartbeat = utcnow()
    await db.commit()

    if not device.machine_id:
        return {
            "status": "pending_assignment",
            "yield": device.count_per_signal,
            "debounce": device.debounce_ms,
            "sku": settings.unknown_sku,
        }

    snapshot = await ActiveConfigurationStore(db).resolve(device.machine_id)
    if device.lane_id is not None:
        sku = snapshot.sku_for_lane(device.lane_id, settings.unknown_sku)
    else:
        sku = snapshot.lanes[0].sku

    return {
        "status": "ok",
        "machine_id": device.machine_id,
        "lane_id": device.lane_id,
        "sku": sku,
        "yield": device.count_per_signal,
        "debounce": device.debounce_ms,
        "version": device.firmware_version,
    }


@router.put("/devices/{mac}")
async def assign_device(
    mac: str,
    assignment: DeviceAssignment,
    db: AsyncSession = Depends(get_db),
):
    mac = mac.strip().upper()
    device = await _get_device(db, mac)
    if device is None:
        device = IoTDeviceConfig(mac_address=mac)
        db.add(device)

    for field, value in assignment.model_dump(exclude_unset=True).items():
        setattr(device, field, value)
    if device.notes == PENDING_ASSIGNMENT_NOTE:
        device.notes = None

    await db.commit()
    await db.refresh(device)
    logger.info("iot.device_assigned", mac=mac, machine_id=device.machine_id, lane_id=device.lane_id)
    return {
        "mac_address": device.mac_address,
        "machine_id": device.machine_id,
        "lane_id": device.lane_id,
        "count_per_signal": device.count_per_signal,
        "debounce_ms": device.debounce_ms,
        "firmware_version": device.firmware_version,
        "notes": device.notes,
    }
