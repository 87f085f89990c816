from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
import uuid

from app.models.order import OrderStatus, PaymentMethod
from app.schemas.base import BaseResponseSchema, BaseCreateSchema


# ==================== ORDER ITEM SCHEMAS ====================

class OrderItemCreate(BaseCreateSchema):
    """Order item creation schema."""
    product_id: uuid.UUID
    variant_id: Optional[str] = Field(None, max_length=80, description="Variant SKU")
    quantity: int = Field(..., ge=1)
    price: Optional[Decimal] = Field(None, ge=0, description="Unit price; defaults to the catalog price")


class OrderItemResponse(BaseResponseSchema):
    """Order item response schema."""
    id: uuid.UUID
    product_id: uuid.UUID
    variant_id: Optional[str] = None
    product_name: str
    image: Optional[str] = None
    price: Decimal
    quantity: int
    line_total: Decimal


# ==================== STATUS HISTORY SCHEMAS ====================

class StatusHistoryResponse(BaseResponseSchema):
    """Order status history response."""
    id: uuid.UUID
    from_status: Optional[str] = None
    to_status: str
    changed_by: Optional[str] = None
    notes: Optional[str] = None
    is_automatic: bool
    created_at: datetime


# ==================== ORDER SCHEMAS ====================

class ShippingAddress(BaseCreateSchema):
    """Delivery address snapshot stored on the order."""
    full_name: Optional[str] = None
    address: str = Field(..., min_length=1)
    city: Optional[str] = None
    phone: str = Field(..., min_length=1)

    @field_validator("address", "phone")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class OrderCreate(BaseCreateSchema):
    """
    Order creation schema.

    Totals are optional: when total_price is omitted they are computed
    once at checkout from the line prices.
    """
    items: List[OrderItemCreate] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = PaymentMethod.COD
    notes: Optional[str] = Field(None, max_length=1000)

    items_price: Optional[Decimal] = Field(None, ge=0)
    tax_price: Optional[Decimal] = Field(None, ge=0)
    shipping_price: Optional[Decimal] = Field(None, ge=0)
    total_price: Optional[Decimal] = Field(None, ge=0)


class PaymentResultUpdate(BaseCreateSchema):
    """Gateway result attached when an order is marked paid."""
    id: Optional[str] = None
    status: Optional[str] = None
    update_time: Optional[str] = None
    email_address: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class OrderStatusUpdate(BaseCreateSchema):
    """Order status update schema."""
    status: OrderStatus
    notes: Optional[str] = Field(None, max_length=1000)


class AutomaticTransitionState(BaseModel):
    scheduled_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None


class AutomaticTransitionsResponse(BaseModel):
    """Scheduling metadata for the two automatic edges."""
    pending_to_processing: AutomaticTransitionState = Field(alias="pendingToProcessing")
    processing_to_delivering: AutomaticTransitionState = Field(alias="processingToDelivering")

    model_config = ConfigDict(populate_by_name=True)


class OrderResponse(BaseResponseSchema):
    """Order response schema."""
    id: uuid.UUID
    order_number: str
    user_id: Optional[str] = None
    order_status: str
    payment_method: str
    items_price: Decimal
    tax_price: Decimal
    shipping_price: Decimal
    total_price: Decimal
    is_paid: bool
    paid_at: Optional[datetime] = None
    is_delivered: bool
    delivered_at: Optional[datetime] = None
    estimated_delivery_date: Optional[datetime] = None
    estimated_delivery_start: Optional[datetime] = None
    estimated_delivery_end: Optional[datetime] = None
    shipping_address: dict
    notes: Optional[str] = None
    item_count: int
    created_at: datetime
    updated_at: datetime
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class OrderDetailResponse(OrderResponse):
    """Detailed order response with items, history and scheduling metadata."""
    items: List[OrderItemResponse] = []
    status_history: List[StatusHistoryResponse] = []
    payment_result: Optional[dict] = None
    automatic_transitions: AutomaticTransitionsResponse


class OrderListResponse(BaseModel):
    """Paginated order list."""
    items: List[OrderResponse]
    total: int
    page: int
    size: int
    pages: int


class SchedulerStatusResponse(BaseModel):
    """Order status scheduler state."""
    running: bool
    interval_seconds: int
    cache_size: int
    cache_capacity: int
    next_run_time: Optional[datetime] = None
    last_tick_at: Optional[datetime] = None
    last_result: Optional[Dict[str, Any]] = None
