# Services module
from app.services.audit_service import AuditService
from app.services.order_sequence_service import OrderSequenceService
from app.services.order_service import OrderService
from app.services.stock_service import StockService

__all__ = [
    "AuditService",
    "OrderSequenceService",
    "OrderService",
    "StockService",
]
