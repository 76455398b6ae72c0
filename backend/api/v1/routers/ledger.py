"""
Stock Ledger Router.

Endpoints:
  GET  /api/v1/ledger/balances — on-hand quantity per SKU (sum of change_qty)
  GET  /api/v1/ledger/entries — ledger rows, e.g. every split of one log row
  POST /api/v1/ledger/reconcile — post any log rows still missing from the ledger
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db
from db.models import StockLedgerEntry
from production.reconciler import reconcile_pending, stock_balances

router = APIRouter(prefix="/api/v1/ledger", tags=["ledger"])


class LedgerEntryResponse(BaseModel):
    txn_id: UUID
    sku: str
    change_qty: int
    event_type: str
    ref_doc: UUID
    lane_id: int
    needs_review: bool
    timestamp: datetime

    model_config = {"from_attributes": True}


@router.get("/balances")
async def get_balances(
    sku: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    return await stock_balances(db, sku=sku)


@router.get("/entries", response_model=list[LedgerEntryResponse])
async def list_entries(
    ref_doc: UUID | None = None,
    sku: str | None = None,
    needs_review: bool | None = None,
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    query = select(StockLedgerEntry)
    if ref_doc:
        query = query.where(StockLedgerEntry.ref_doc == ref_doc)
    if sku:
        query = query.where(StockLedgerEntry.sku == sku)
    if needs_review is not None:
        query = query.where(StockLedgerEntry.needs_review == needs_review)
    query = query.order_by(StockLedgerEntry.timestamp.desc(), StockLedgerEntry.lane_id).limit(limit)
    result = await db.execute(query)
    return result.scalars().all()


@router.post("/reconcile")
async def trigger_reconcile(
    limit: int = Query(500, ge=1, le=5000),
    db: AsyncSession = Depends(get_db),
):
    """Run the unreconciled-row sweep inline."""
    summary = await reconcile_pending(db, limit=limit)
    return {"status": "success" if not summary["failed"] else "partial", **summary}
