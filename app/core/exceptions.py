"""
Domain errors for the order and inventory engine.

Caller-facing operations raise these; the FastAPI exception handlers in
app.main translate them into HTTP responses. Background work (scheduler
ticks, audit writes) catches and logs them instead.
"""
from typing import List, Optional


class OrderEngineError(Exception):
    """Base class for all order/stock domain errors."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message}


class ValidationError(OrderEngineError):
    """Raised when input is malformed or missing required fields."""
    status_code = 400


class NotFoundError(OrderEngineError):
    """Raised when an order or product does not exist."""
    status_code = 404


class InsufficientStockError(OrderEngineError):
    """
    Raised when one or more line items exceed available stock.

    shortages holds every offending line, not only the first one:
    [{"product_id", "product_name", "variant_id", "available", "requested", "message"}]
    """
    status_code = 409

    def __init__(self, shortages: List[dict], message: Optional[str] = None):
        self.shortages = shortages
        super().__init__(message or "Insufficient stock for one or more items")

    def to_dict(self) -> dict:
        return {"detail": self.message, "errors": self.shortages}


class StockReservationError(OrderEngineError):
    """Raised when a reservation fails for a reason other than quantity."""
    status_code = 500


class InvalidTransitionError(OrderEngineError):
    """Raised when a status change is not reachable from the current status."""
    status_code = 409

    def __init__(self, current_status: str, attempted_status: str, reason: Optional[str] = None):
        self.current_status = current_status
        self.attempted_status = attempted_status
        super().__init__(
            reason or f"Invalid status transition from {current_status} to {attempted_status}"
        )

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "current_status": self.current_status,
            "attempted_status": self.attempted_status,
        }


class PersistenceError(OrderEngineError):
    """Raised when an order write fails after stock was reserved."""
    status_code = 500


class SchedulerTransitionError(OrderEngineError):
    """A single order failed during an automatic transition tick."""

    def __init__(self, order_number: str, transition: str, cause: Exception):
        self.order_number = order_number
        self.transition = transition
        self.cause = cause
        super().__init__(f"Automatic transition {transition} failed for order {order_number}: {cause}")


class AuditLogError(OrderEngineError):
    """Writing an audit entry failed. Never propagated."""
