"""
Ledger Reconciler — project production log rows into the stock ledger.

Each production_logs row yields exactly one StockLedgerEntry
(change_qty = +count, event_type = "Production", ref_doc = log id).
(ref_doc, lane_id) is unique in stock_ledger, so reconciliation can be
re-run any number of times (after a crash, from the sweep worker, from a
manual trigger) without double-counting stock.

The log row is the source of truth; the ledger entry is a derived
projection. A failed ledger write never touches the log row, it just
leaves it for reconcile_pending() to pick up.

Rows produced against the sentinel SKU are still posted so no quantity
is lost, but they carry needs_review=True for later reattribution.
"""

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from db.models import ProductionLog, StockLedgerEntry
from production.errors import ReconciliationFailure

logger = structlog.get_logger()

PRODUCTION_EVENT = "Production"


@dataclass(frozen=True)
class LedgerPosting:
    """Plain copy of the log fields a ledger entry needs.

    Taken up front so a rollback (which expires ORM instances) in the
    middle of a batch can't trigger lazy loads on the remaining rows.
    """

    log_id: uuid.UUID
    lane_id: int
    sku: str
    count: int
    event_time: datetime

    @classmethod
    def from_log(cls, log: ProductionLog) -> "LedgerPosting":
        return cls(
            log_id=log.id,
            lane_id=log.lane_id,
            sku=log.product_sku,
            count=log.count,
            event_time=log.event_time,
        )


@dataclass
class ReconcileOutcome:
    entry: StockLedgerEntry | None
    created: bool

    @property
    def noop(self) -> bool:
        return not self.created


class LedgerReconciler:
    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()

    async def reconcile(self, log: ProductionLog | LedgerPosting) -> ReconcileOutcome:
        """Post one log row to the ledger, or no-op if it is already there."""
        posting = log if isinstance(log, LedgerPosting) else LedgerPosting.from_log(log)

        existing = await self._existing(posting)
        if existing is not None:
            return ReconcileOutcome(entry=existing, created=False)

        needs_review = posting.sku == self.settings.unknown_sku
        entry = StockLedgerEntry(
            sku=posting.sku,
            change_qty=posting.count,
            event_type=PRODUCTION_EVENT,
            ref_doc=posting.log_id,
            lane_id=posting.lane_id,
            needs_review=needs_review,
            timestamp=posting.event_time,
        )
        self.db.add(entry)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            existing = await self._existing(posting)
            if existing is not None:
                return ReconcileOutcome(entry=existing, created=False)
            raise ReconciliationFailure(f"ledger insert rejected for log {posting.log_id}") from exc
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise ReconciliationFailure(str(exc)) from exc

        if needs_review:
            logger.warning("reconcile.unknown_sku", log_id=str(posting.log_id), qty=posting.count)
        return ReconcileOutcome(entry=entry, created=True)

    async def reconcile_many(self, logs: Iterable[ProductionLog | LedgerPosting]) -> dict[str, Any]:
        """Reconcile a batch; one failing row does not stop the rest."""
        postings = [log if isinstance(log, LedgerPosting) else LedgerPosting.from_log(log) for log in logs]
        summary: dict[str, Any] = {"created": 0, "noop": 0, "failed": 0, "errors": []}
        for posting in postings:
            try:
                outcome = await self.reconcile(posting)
            except ReconciliationFailure as exc:
                summary["failed"] += 1
                summary["errors"].append(f"{posting.log_id}: {exc}")
                logger.warning("reconcile.failed", log_id=str(posting.log_id), error=str(exc))
                continue
            summary["created" if outcome.created else "noop"] += 1
        return summary

    async def _existing(self, posting: LedgerPosting) -> StockLedgerEntry | None:
        result = await self.db.execute(
            select(StockLedgerEntry).where(
                StockLedgerEntry.ref_doc == posting.log_id,
                StockLedgerEntry.lane_id == posting.lane_id,
            )
        )
        return result.scalar_one_or_none()


# ── Sweep / batch helpers ─────────────────────────────────────────────────


async def find_unreconciled(db: AsyncSession, limit: int = 500) -> list[ProductionLog]:
    """Log rows with no ledger entry, oldest receipt first."""
    result = await db.execute(
        select(ProductionLog)
        .outerjoin(
            StockLedgerEntry,
            and_(
                StockLedgerEntry.ref_doc == ProductionLog.id,
                StockLedgerEntry.lane_id == ProductionLog.lane_id,
            ),
        )
        .where(StockLedgerEntry.txn_id.is_(None))
        .order_by(ProductionLog.received_time, ProductionLog.lane_id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def reconcile_pending(db: AsyncSession, limit: int = 500, settings: Settings | None = None) -> dict[str, Any]:
    pending = await find_unreconciled(db, limit=limit)
    summary = await LedgerReconciler(db, settings).reconcile_many(pending)
    summary["scanned"] = len(pending)
    logger.info(
        "reconcile.sweep.completed",
        scanned=summary["scanned"],
        created=summary["created"],
        failed=summary["failed"],
    )
    return summary


async def reconcile_log_ids(
    db: AsyncSession,
    log_ids: Sequence[uuid.UUID | str],
    settings: Settings | None = None,
) -> dict[str, Any]:
    ids = [value if isinstance(value, uuid.UUID) else uuid.UUID(str(value)) for value in log_ids]
    if not ids:
        return {"created": 0, "noop": 0, "failed": 0, "errors": [], "scanned": 0}
    result = await db.execute(select(ProductionLog).where(ProductionLog.id.in_(ids)))
    logs = list(result.scalars().all())
    summary = await LedgerReconciler(db, settings).reconcile_many(logs)
    summary["scanned"] = len(logs)
    return summary


async def stock_balances(db: AsyncSession, sku: str | None = None) -> list[dict[str, Any]]:
    query = select(
        StockLedgerEntry.sku,
        func.sum(StockLedgerEntry.change_qty).label("on_hand"),
        func.count(StockLedgerEntry.txn_id).label("entries"),
    ).group_by(StockLedgerEntry.sku)
    if sku:
        query = query.where(StockLedgerEntry.sku == sku)
    result = await db.execute(query.order_by(StockLedgerEntry.sku))
    return [
        {"sku": row.sku, "on_hand": int(row.on_hand or 0), "entries": int(row.entries or 0)}
        for row in result.all()
    ]
