"""
Active Configuration Router — operator retooling of machine lanes.

Endpoints:
  POST /api/v1/config/set-product — set the SKU running on a machine lane
  GET  /api/v1/config/active-products — current lane assignments
"""

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db
from production.config_store import ActiveConfigurationStore

router = APIRouter(prefix="/api/v1/config", tags=["config"])


class SetProductRequest(BaseModel):
    machine_id: str = Field(..., min_length=1, max_length=50)
    lane_id: int = Field(0, ge=0)
    product_sku: str = Field(..., min_length=1, max_length=100)


class ActiveProductResponse(BaseModel):
    machine_id: str
    lane_id: int
    product_sku: str
    updated_at: datetime

    model_config = {"from_attributes": True}


@router.post("/set-product")
async def set_product(
    payload: SetProductRequest,
    db: AsyncSession = Depends(get_db),
):
    """Overwrite the active SKU for one lane; applies to the next signal."""
    store = ActiveConfigurationStore(db)
    assignment = await store.set_active(payload.machine_id, payload.lane_id, payload.product_sku)
    return {
        "status": "ok",
        "machine_id": assignment.machine_id,
        "lane_id": assignment.lane_id,
        "active_sku": assignment.product_sku,
    }


@router.get("/active-products", response_model=list[ActiveProductResponse])
async def list_active_products(
    machine_id: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    return await ActiveConfigurationStore(db).list_active(machine_id)
