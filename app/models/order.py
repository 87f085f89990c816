import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List
from decimal import Decimal

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Numeric, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType, JSONType


class OrderStatus(str, Enum):
    """Order status enumeration."""
    PENDING = "pending"          # Order placed, stock reserved
    PROCESSING = "processing"    # Being prepared
    DELIVERING = "delivering"    # Handed to the courier
    DELIVERED = "delivered"      # Received by the customer

    CANCELLED = "cancelled"      # Stock restored
    REFUNDED = "refunded"        # Refund issued after delivery, stock restored


class PaymentMethod(str, Enum):
    """Payment method enumeration."""
    COD = "COD"
    BANK_TRANSFER = "BANK_TRANSFER"
    MOMO = "MOMO"
    ZALOPAY = "ZALOPAY"
    CARD = "CARD"


class AutomaticTransition(str, Enum):
    """Edges fired by the order status scheduler."""
    PENDING_TO_PROCESSING = "pendingToProcessing"
    PROCESSING_TO_DELIVERING = "processingToDelivering"


class Order(Base):
    """
    Order model for the storefront.
    Tracks orders from checkout to delivery.

    Totals are computed once at checkout and stored verbatim.
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index('ix_order_status_created', 'order_status', 'created_at'),
        Index('ix_order_pending_due', 'order_status', 'pending_to_processing_scheduled_at'),
        Index('ix_order_processing_due', 'order_status', 'processing_to_delivering_scheduled_at'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Order Identification
    order_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True
    )

    # Customer (None for guest checkout)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Status
    order_status: Mapped[str] = mapped_column(
        String(20),
        default=OrderStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="pending, processing, delivering, delivered, cancelled, refunded"
    )

    # Pricing
    items_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    tax_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)
    shipping_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    # Payment
    payment_method: Mapped[str] = mapped_column(
        String(30),
        default=PaymentMethod.COD.value,
        nullable=False,
        comment="COD, BANK_TRANSFER, MOMO, ZALOPAY, CARD"
    )
    payment_result: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Delivery
    shipping_address: Mapped[dict] = mapped_column(JSONType, nullable=False)
    is_delivered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Delivery estimate, fixed at checkout
    estimated_delivery_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_delivery_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_delivery_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Automatic transitions
    pending_to_processing_scheduled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    pending_to_processing_executed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_to_delivering_scheduled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_to_delivering_executed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.created_at",
    )
    status_history: Mapped[List["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.created_at",
    )

    @property
    def status(self) -> OrderStatus:
        return OrderStatus(self.order_status)

    @property
    def is_cod(self) -> bool:
        return self.payment_method == PaymentMethod.COD.value

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def automatic_transitions(self) -> dict:
        return {
            AutomaticTransition.PENDING_TO_PROCESSING.value: {
                "scheduled_at": self.pending_to_processing_scheduled_at,
                "executed_at": self.pending_to_processing_executed_at,
            },
            AutomaticTransition.PROCESSING_TO_DELIVERING.value: {
                "scheduled_at": self.processing_to_delivering_scheduled_at,
                "executed_at": self.processing_to_delivering_executed_at,
            },
        }

    def stock_line_items(self) -> list:
        """Line items in the shape StockService expects."""
        from app.services.stock_service import StockLineItem

        return [
            StockLineItem(product_id=item.product_id, variant_id=item.variant_id, quantity=item.quantity)
            for item in self.items
        ]

    def __repr__(self) -> str:
        return f"<Order(order_number='{self.order_number}', status='{self.order_status}')>"


class OrderItem(Base):
    """Order line item; name, image and price are snapshots taken at checkout."""
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # No FK: an order outlives a deleted product
    product_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    variant_id: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)

    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    image: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


class OrderStatusHistory(Base):
    """Order status change history."""
    __tablename__ = "order_status_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_automatic: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="status_history")
