from app.models.product import Product, ProductVariant
from app.models.order import (
    Order, OrderItem, OrderStatusHistory,
    OrderStatus, PaymentMethod, AutomaticTransition,
)
from app.models.order_audit_log import OrderAuditLog, AuditAction, AuditField, ActorRole, SYSTEM_ACTOR
from app.models.order_sequence import OrderSequence

__all__ = [
    "Product",
    "ProductVariant",
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "OrderStatus",
    "PaymentMethod",
    "AutomaticTransition",
    "OrderAuditLog",
    "AuditAction",
    "AuditField",
    "ActorRole",
    "SYSTEM_ACTOR",
    "OrderSequence",
]
