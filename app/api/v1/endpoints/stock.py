from typing import List, Optional
import uuid

from fastapi import APIRouter, Query

from app.api.deps import DB, AdminActor
from app.schemas.stock import (
    StockAdjustRequest,
    StockInfoResponse,
    LowStockItemResponse,
    StockSummaryResponse,
    StockValidateRequest,
    StockValidateResponse,
)
from app.services.stock_service import StockLineItem, StockService


router = APIRouter(tags=["Stock"])


@router.get("/summary", response_model=StockSummaryResponse)
async def get_stock_summary(
    db: DB,
    admin: AdminActor,
    threshold: Optional[int] = Query(None, ge=0),
):
    """Low-stock, out-of-stock and critical items."""
    service = StockService(db)
    return await service.get_stock_summary(threshold)


@router.get("/low-stock", response_model=List[LowStockItemResponse])
async def get_low_stock_products(
    db: DB,
    admin: AdminActor,
    threshold: Optional[int] = Query(None, ge=0, description="Override each product's threshold"),
):
    """Published products and variants at or below their low-stock threshold."""
    service = StockService(db)
    return await service.get_low_stock_products(threshold)


@router.get("/product/{product_id}", response_model=StockInfoResponse)
async def get_product_stock(
    product_id: uuid.UUID,
    db: DB,
    admin: AdminActor,
    variant_id: Optional[str] = Query(None, description="Variant SKU"),
):
    """Current stock for a product or one of its variants."""
    service = StockService(db)
    return await service.get_stock_info(product_id, variant_id)


@router.put("/adjust", response_model=StockInfoResponse)
async def adjust_stock(
    data: StockAdjustRequest,
    db: DB,
    admin: AdminActor,
):
    """
    Manually add or subtract stock.
    Requires: admin

    Subtracting more than is available is rejected with 409.
    """
    service = StockService(db)
    return await service.adjust_stock(
        product_id=data.product_id,
        variant_id=data.variant_id,
        quantity=data.quantity,
        operation=data.operation,
        reason=data.reason,
        adjusted_by=admin.id,
    )


@router.post("/validate", response_model=StockValidateResponse)
async def validate_stock(
    data: StockValidateRequest,
    db: DB,
    admin: AdminActor,
):
    """Check every line against current stock without reserving anything."""
    service = StockService(db)
    result = await service.validate_availability([
        StockLineItem(product_id=item.product_id, variant_id=item.variant_id, quantity=item.quantity)
        for item in data.items
    ])
    return StockValidateResponse(
        ok=result.ok,
        errors=result.errors,
        shortages=result.shortages,
        stock_info=result.stock_info,
    )
