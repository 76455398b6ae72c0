"""
Active-Configuration Store — which SKU each machine lane is producing right now.

resolve() reads every lane of a machine in a single statement and freezes
the result into a ConfigSnapshot. The ingestion pipeline splits against
that snapshot only, so an operator retooling the machine mid-request
affects the *next* signal, never a half-processed one.

No history is kept here. Historical attribution lives on
production_logs.product_sku, which records the SKU used at event time.
"""

from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import ActiveProductAssignment, utcnow
from production.errors import InvalidRequest

logger = structlog.get_logger()

SENTINEL_LANE_ID = 0


@dataclass(frozen=True)
class LaneAssignment:
    lane_id: int
    sku: str


@dataclass(frozen=True)
class ConfigSnapshot:
    """Point-in-time view of a machine's lane assignments."""

    machine_id: str
    lanes: tuple[LaneAssignment, ...]
    unresolved: bool = False
    resolved_at: datetime = field(default_factory=utcnow)

    @property
    def skus(self) -> list[str]:
        return [lane.sku for lane in self.lanes]

    def sku_for_lane(self, lane_id: int, default: str) -> str:
        for lane in self.lanes:
            if lane.lane_id == lane_id:
                return lane.sku
        return default


def _require_machine_id(machine_id: str | None) -> str:
    if machine_id is None or not str(machine_id).strip():
        raise InvalidRequest("machine_id is required")
    return str(machine_id).strip()


class ActiveConfigurationStore:
    """Reads and overwrites machine_active_products rows."""

    def __init__(self, db: AsyncSession, unknown_sku: str | None = None):
        self.db = db
        self.unknown_sku = unknown_sku or get_settings().unknown_sku

    async def resolve(self, machine_id: str) -> ConfigSnapshot:
        """
        Return the machine's lane assignments ordered by lane_id.

        A machine with no assignment resolves to a single sentinel lane
        (lane 0, UNKNOWN) instead of failing, so a pulse is never dropped
        because nobody configured the machine yet.
        """
        machine_id = _require_machine_id(machine_id)
        result = await self.db.execute(
            select(ActiveProductAssignment.lane_id, ActiveProductAssignment.product_sku)
            .where(ActiveProductAssignment.machine_id == machine_id)
            .order_by(ActiveProductAssignment.lane_id)
        )
        lanes = tuple(LaneAssignment(lane_id=row.lane_id, sku=row.product_sku) for row in result.all())

        if not lanes:
            logger.warning("config.unresolved", machine_id=machine_id, sku=self.unknown_sku)
            return ConfigSnapshot(
                machine_id=machine_id,
                lanes=(LaneAssignment(lane_id=SENTINEL_LANE_ID, sku=self.unknown_sku),),
                unresolved=True,
            )
        return ConfigSnapshot(machine_id=machine_id, lanes=lanes)

    async def set_active(self, machine_id: str, lane_id: int, sku: str) -> ActiveProductAssignment:
        """Overwrite the SKU running on one lane. The only mutator of this store."""
        machine_id = _require_machine_id(machine_id)
        if lane_id is None or lane_id < 0:
            raise InvalidRequest("lane_id must be a non-negative integer")
        if not sku or not sku.strip():
            raise InvalidRequest("product_sku is required")
        sku = sku.strip()

        assignment = await self._get(machine_id, lane_id)
        if assignment is None:
            assignment = ActiveProductAssignment(machine_id=machine_id, lane_id=lane_id, product_sku=sku)
            self.db.add(assignment)
            try:
                await self.db.commit()
            except IntegrityError:
                # Lost an insert race with another operator; overwrite theirs.
                await self.db.rollback()
                assignment = await self._get(machine_id, lane_id)
                assignment.product_sku = sku
                assignment.updated_at = utcnow()
                await self.db.commit()
        else:
            previous = assignment.product_sku
            assignment.product_sku = sku
            assignment.updated_at = utcnow()
            await self.db.commit()
            logger.info(
                "config.retooled",
                machine_id=machine_id,
                lane_id=lane_id,
                previous_sku=previous,
                sku=sku,
            )

        await self.db.refresh(assignment)
        return assignment

    async def list_active(self, machine_id: str | None = None) -> list[ActiveProductAssignment]:
        query = select(ActiveProductAssignment)
        if machine_id:
            query = query.where(ActiveProductAssignment.machine_id == machine_id)
        query = query.order_by(ActiveProductAssignment.machine_id, ActiveProductAssignment.lane_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _get(self, machine_id: str, lane_id: int) -> ActiveProductAssignment | None:
        result = await self.db.execute(
            select(ActiveProductAssignment).where(
                ActiveProductAssignment.machine_id == machine_id,
                ActiveProductAssignment.lane_id == lane_id,
            )
        )
        return result.scalar_one_or_none()
