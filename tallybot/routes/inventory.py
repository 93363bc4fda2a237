import logging

from fastapi import APIRouter, HTTPException, Request, status

from ..db import get_session
from ..ratelimit import limiter
from ..schemas import (
    BaseTargetRequest,
    BaseTargetResponse,
    StockResponse,
    StockRowSchema,
    StoreGroupSchema,
    SuggestedPurchaseSchema,
    SuggestedPurchasesResponse,
)
from ..services.inventory import (
    NoSnapshot,
    StockRow,
    get_stock_actual,
    get_suggested_purchases,
    group_by_store,
    set_base_target,
)
from ..services.product_resolver import resolve_products_by_names

router = APIRouter(prefix="/inventory", tags=["inventory"])

logger = logging.getLogger(__name__)


def _no_snapshot() -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="no_snapshot")


def _suggestion(row: StockRow) -> SuggestedPurchaseSchema:
    return SuggestedPurchaseSchema(
        productId=row.product_id,
        name=row.name,
        store=row.store,
        baseQty=row.base_qty,
        stockActual=row.stock_actual,
        shortfall=row.shortfall,
    )


@router.get("/stock", response_model=StockResponse)
@limiter.limit("60/minute")
async def stock(request: Request):
    async with get_session() as session:
        result = await get_stock_actual(session)
    if isinstance(result, NoSnapshot):
        raise _no_snapshot()
    return StockResponse(
        snapshotId=result.snapshot_id,
        items=[
            StockRowSchema(
                productId=row.product_id,
                name=row.name,
                store=row.store,
                baseQty=row.base_qty,
                snapshotQty=row.snapshot_qty,
                purchasedQty=row.purchased_qty,
                stockActual=row.stock_actual,
            )
            for row in result.rows
        ],
    )


@router.get("/suggested-purchases", response_model=SuggestedPurchasesResponse)
@limiter.limit("60/minute")
async def suggested_purchases(request: Request, by_store: bool = False):
    async with get_session() as session:
        result = await get_suggested_purchases(session)
    if isinstance(result, NoSnapshot):
        raise _no_snapshot()
    if by_store:
        return SuggestedPurchasesResponse(
            snapshotId=result.snapshot_id,
            stores=[
                StoreGroupSchema(store=store, items=[_suggestion(row) for row in rows])
                for store, rows in group_by_store(result.rows).items()
            ],
        )
    return SuggestedPurchasesResponse(
        snapshotId=result.snapshot_id,
        items=[_suggestion(row) for row in result.rows],
    )


@router.put("/base-targets", response_model=BaseTargetResponse)
async def update_base_target(payload: BaseTargetRequest):
    async with get_session() as session:
        resolved = await resolve_products_by_names(session, [payload.name])
        product = resolved.get(payload.name)
        if product is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
        await set_base_target(session, product.product_id, payload.qty)
    logger.info("Base target updated", extra={"product_id": product.product_id, "qty": payload.qty})
    return BaseTargetResponse(productId=product.product_id, name=product.name, baseQty=payload.qty)
