"""Stock schemas for API requests/responses."""
from pydantic import BaseModel, Field
from typing import Literal, Optional, List
import uuid

from app.schemas.base import BaseCreateSchema


# ==================== REQUEST SCHEMAS ====================

class StockLineItemSchema(BaseCreateSchema):
    """One line of a stock validation request."""
    product_id: uuid.UUID
    variant_id: Optional[str] = Field(None, max_length=80)
    quantity: int = Field(..., ge=1)


class StockValidateRequest(BaseCreateSchema):
    """Request for bulk stock validation."""
    items: List[StockLineItemSchema] = Field(..., min_length=1)


class StockAdjustRequest(BaseCreateSchema):
    """Manual stock adjustment by an admin."""
    product_id: uuid.UUID
    variant_id: Optional[str] = Field(None, max_length=80)
    quantity: int = Field(..., ge=1)
    operation: Literal["add", "subtract"]
    reason: Optional[str] = Field(None, max_length=500)


# ==================== RESPONSE SCHEMAS ====================

class StockInfoResponse(BaseModel):
    """Current stock for a product or one of its variants."""
    product_id: uuid.UUID
    product_name: str
    variant_id: Optional[str] = None
    variant_name: Optional[str] = None
    stock_quantity: int
    sales_count: int
    low_stock_threshold: int
    is_low_stock: bool
    is_out_of_stock: bool


class StockValidationLine(BaseModel):
    product_id: str
    product_name: str
    variant_id: Optional[str] = None
    quantity: int
    available_stock: int
    stock_location: str


class StockShortage(BaseModel):
    product_id: str
    product_name: str
    variant_id: Optional[str] = None
    available: int
    requested: int
    message: str


class StockValidateResponse(BaseModel):
    """Result of a bulk validation; every line is checked."""
    ok: bool
    errors: List[str] = []
    shortages: List[StockShortage] = []
    stock_info: List[StockValidationLine] = []


class LowStockItemResponse(BaseModel):
    """A product or variant at or below its low-stock threshold."""
    product_id: uuid.UUID
    product_name: str
    sku: str
    variant_id: Optional[str] = None
    variant_name: Optional[str] = None
    stock_quantity: int
    threshold: int
    type: str


class StockSummaryResponse(BaseModel):
    """Low, out-of-stock and critical items."""
    low_stock_items: List[LowStockItemResponse]
    total_low_stock_items: int
    out_of_stock_items: List[LowStockItemResponse]
    critical_stock_items: List[LowStockItemResponse]
