from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    Ingest,
    IngestStatus,
    InventoryLine,
    InventorySnapshot,
    Product,
    Purchase,
    PurchaseLine,
    Store,
)
from .batch import CommitLine

logger = logging.getLogger(__name__)

NO_STORE_LABEL = "No store"


@dataclass(frozen=True)
class StockRow:
    product_id: int
    name: str
    store: Optional[str]
    base_qty: float
    snapshot_qty: float
    purchased_qty: float

    @property
    def stock_actual(self) -> float:
        return round(self.snapshot_qty + self.purchased_qty, 3)

    @property
    def shortfall(self) -> float:
        return round(max(self.base_qty - self.stock_actual, 0.0), 3)


@dataclass(frozen=True)
class StockReport:
    snapshot_id: int
    rows: List[StockRow]


@dataclass(frozen=True)
class NoSnapshot:
    """No weekly count exists yet, so stock cannot be derived."""

    reason: str = "no_snapshot"


StockResult = Union[StockReport, NoSnapshot]


async def _commit(session: AsyncSession) -> None:
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise


def _collapse(lines: Iterable[CommitLine]) -> Dict[int, float]:
    # Later lines for the same product win, like an upsert on (parent, product).
    collapsed: Dict[int, float] = {}
    for line in lines:
        collapsed[line.product_id] = float(line.qty)
    return collapsed


async def get_active_snapshot_id(session: AsyncSession) -> Optional[int]:
    result = await session.execute(
        select(InventorySnapshot.id).order_by(InventorySnapshot.id.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def start_new_cycle(session: AsyncSession, lines: Iterable[CommitLine]) -> int:
    """Replace the current cycle with a fresh weekly snapshot.

    Every previous snapshot and every purchase is deleted; nothing is archived.
    The whole sequence commits or rolls back as one unit.
    """
    collapsed = _collapse(lines)
    try:
        await session.execute(delete(PurchaseLine))
        await session.execute(delete(Purchase))
        await session.execute(delete(InventoryLine))
        await session.execute(delete(InventorySnapshot))

        snapshot = InventorySnapshot()
        session.add(snapshot)
        await session.flush()
        snapshot_id = snapshot.id
        session.add_all(
            InventoryLine(snapshot_id=snapshot_id, product_id=product_id, qty=qty)
            for product_id, qty in collapsed.items()
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("Started new inventory cycle", extra={"snapshot_id": snapshot_id, "lines": len(collapsed)})
    return snapshot_id


async def record_purchase(session: AsyncSession, lines: Iterable[CommitLine]) -> int:
    collapsed = _collapse(lines)
    try:
        purchase = Purchase()
        session.add(purchase)
        await session.flush()
        purchase_id = purchase.id
        session.add_all(
            PurchaseLine(purchase_id=purchase_id, product_id=product_id, qty=qty)
            for product_id, qty in collapsed.items()
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("Recorded purchase", extra={"purchase_id": purchase_id, "lines": len(collapsed)})
    return purchase_id


async def set_base_target(session: AsyncSession, product_id: int, qty: float) -> bool:
    result = await session.execute(
        update(Product).where(Product.id == product_id).values(base_qty=float(qty))
    )
    await _commit(session)
    return bool(result.rowcount)


async def set_base_targets(session: AsyncSession, lines: Iterable[CommitLine]) -> int:
    collapsed = _collapse(lines)
    try:
        for product_id, qty in collapsed.items():
            await session.execute(
                update(Product).where(Product.id == product_id).values(base_qty=qty)
            )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return len(collapsed)


async def _stock_rows(session: AsyncSession, snapshot_id: int, *, targets_only: bool = False) -> List[StockRow]:
    purchased = (
        select(
            PurchaseLine.product_id.label("product_id"),
            func.sum(PurchaseLine.qty).label("purchased"),
        )
        .group_by(PurchaseLine.product_id)
        .subquery()
    )
    stmt = (
        select(
            Product.id,
            Product.name,
            Store.name,
            Product.base_qty,
            func.coalesce(InventoryLine.qty, 0),
            func.coalesce(purchased.c.purchased, 0),
        )
        .select_from(Product)
        .outerjoin(Store, Store.id == Product.store_id)
        .outerjoin(
            InventoryLine,
            and_(InventoryLine.product_id == Product.id, InventoryLine.snapshot_id == snapshot_id),
        )
        .outerjoin(purchased, purchased.c.product_id == Product.id)
        .where(Product.active.is_(True))
        .order_by(Store.name.is_(None), Store.name, Product.name)
    )
    if targets_only:
        stmt = stmt.where(Product.base_qty > 0)
    result = await session.execute(stmt)
    return [
        StockRow(
            product_id=product_id,
            name=name,
            store=store,
            base_qty=float(base_qty or 0),
            snapshot_qty=float(snapshot_qty or 0),
            purchased_qty=float(purchased_qty or 0),
        )
        for product_id, name, store, base_qty, snapshot_qty, purchased_qty in result.all()
    ]


async def get_stock_actual(session: AsyncSession) -> StockResult:
    snapshot_id = await get_active_snapshot_id(session)
    if snapshot_id is None:
        return NoSnapshot()
    return StockReport(snapshot_id=snapshot_id, rows=await _stock_rows(session, snapshot_id))


async def get_suggested_purchases(session: AsyncSession) -> StockResult:
    snapshot_id = await get_active_snapshot_id(session)
    if snapshot_id is None:
        return NoSnapshot()
    rows = await _stock_rows(session, snapshot_id, targets_only=True)
    return StockReport(snapshot_id=snapshot_id, rows=[row for row in rows if row.shortfall > 0])


def group_by_store(rows: Iterable[StockRow]) -> "OrderedDict[str, List[StockRow]]":
    grouped: "OrderedDict[str, List[StockRow]]" = OrderedDict()
    for row in rows:
        grouped.setdefault(row.store or NO_STORE_LABEL, []).append(row)
    return grouped


async def create_ingest(
    session: AsyncSession,
    *,
    chat_id: int,
    mode: str,
    source_file_ref: str,
    source_file_unique_id: Optional[str] = None,
    mime_type: Optional[str] = None,
    file_name: Optional[str] = None,
    file_size: Optional[int] = None,
) -> Ingest:
    ingest = Ingest(
        chat_id=chat_id,
        mode=mode,
        source_file_ref=source_file_ref,
        source_file_unique_id=source_file_unique_id,
        mime_type=mime_type,
        file_name=file_name,
        file_size=file_size,
        status=IngestStatus.PENDING,
    )
    session.add(ingest)
    await _commit(session)
    await session.refresh(ingest)
    return ingest


async def mark_ingest(session: AsyncSession, ingest_id: int, status: str, error: Optional[str] = None) -> None:
    await session.execute(
        update(Ingest)
        .where(Ingest.id == ingest_id)
        .values(status=status, error=(error[:1024] if error else None))
    )
    await _commit(session)
