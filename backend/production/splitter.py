"""
Lane Splitter — turn one raw pulse count into per-lane production counts.

Rules:
  - One lane: the whole count goes to it.
  - Explicit lane_id from the device: the whole count goes to that lane.
  - Several lanes, no lane_id: integer-divide evenly, remainder goes to
    the first lane in assignment order (deterministic tie-break).
  - Zero-count lanes are dropped.

Post-condition: sum(out.count) == pulse_count.
"""

from collections.abc import Sequence
from dataclasses import dataclass

from production.config_store import LaneAssignment
from production.errors import InvalidRequest, PipelineError


@dataclass(frozen=True)
class LaneCount:
    lane_id: int
    sku: str
    count: int


def split(
    pulse_count: int,
    lane_assignments: Sequence[LaneAssignment],
    lane_id: int | None = None,
    unknown_sku: str = "UNKNOWN",
) -> list[LaneCount]:
    if pulse_count < 0:
        raise InvalidRequest("pulse_count must be >= 0")
    if not lane_assignments:
        raise InvalidRequest("at least one lane assignment is required")

    if lane_id is not None:
        sku = next((lane.sku for lane in lane_assignments if lane.lane_id == lane_id), unknown_sku)
        shares = [LaneCount(lane_id=lane_id, sku=sku, count=pulse_count)]
    elif len(lane_assignments) == 1:
        only = lane_assignments[0]
        shares = [LaneCount(lane_id=only.lane_id, sku=only.sku, count=pulse_count)]
    else:
        base, remainder = divmod(pulse_count, len(lane_assignments))
        shares = [
            LaneCount(
                lane_id=lane.lane_id,
                sku=lane.sku,
                count=base + (remainder if position == 0 else 0),
            )
            for position, lane in enumerate(lane_assignments)
        ]

    result = [share for share in shares if share.count > 0]
    if sum(share.count for share in result) != pulse_count:
        raise PipelineError(f"lane split lost counts: {pulse_count} -> {[share.count for share in result]}")
    return result
