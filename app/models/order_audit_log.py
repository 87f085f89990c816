import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any

from sqlalchemy import String, DateTime, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import UUIDType, JSONType


SYSTEM_ACTOR = "system"


class AuditAction(str, Enum):
    STATUS_CHANGE = "status_change"
    PAYMENT_STATUS_CHANGE = "payment_status_change"
    ORDER_CREATED = "order_created"
    ORDER_UPDATED = "order_updated"


class AuditField(str, Enum):
    ORDER_STATUS = "orderStatus"
    IS_PAID = "isPaid"
    PAID_AT = "paidAt"
    DELIVERED_AT = "deliveredAt"
    GENERAL = "general"


class ActorRole(str, Enum):
    ADMIN = "admin"
    USER = "user"
    SYSTEM = "system"


class OrderAuditLog(Base):
    """
    Append-only audit trail for order mutations.
    Records status changes, payment changes, creation and general updates.
    Rows are written once and never updated or deleted.
    """
    __tablename__ = "order_audit_logs"
    __table_args__ = (
        Index('ix_order_audit_order_created', 'order_id', 'created_at'),
        Index('ix_order_audit_number_created', 'order_number', 'created_at'),
        Index('ix_order_audit_action_created', 'action', 'created_at'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Order reference (no FK: the trail stays readable on its own)
    order_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    order_number: Mapped[str] = mapped_column(String(30), nullable=False)

    # Action details
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    field: Mapped[str] = mapped_column(String(30), nullable=False)

    # Change tracking
    old_value: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    new_value: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)

    # Who performed the action
    changed_by: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    changed_by_role: Mapped[str] = mapped_column(String(10), nullable=False, default=ActorRole.ADMIN.value)

    # Request metadata
    ip_address: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True, default=dict)

    # Timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def get_display_message(self) -> str:
        if self.action == AuditAction.STATUS_CHANGE.value:
            return f'Order status changed from "{self.old_value}" to "{self.new_value}"'
        if self.action == AuditAction.PAYMENT_STATUS_CHANGE.value:
            old = "Paid" if self.old_value else "Unpaid"
            new = "Paid" if self.new_value else "Unpaid"
            return f'Payment status changed from "{old}" to "{new}"'
        if self.action == AuditAction.ORDER_CREATED.value:
            return "Order created"
        if self.action == AuditAction.ORDER_UPDATED.value:
            return "Order updated"
        return f"{self.field} changed"

    def __repr__(self) -> str:
        return f"<OrderAuditLog(action='{self.action}', order='{self.order_number}')>"
