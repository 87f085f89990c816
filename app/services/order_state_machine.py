"""
Order State Machine

All order status transitions, manual and automatic, are validated here.

    pending ──► processing ──► delivering ──► delivered ──► refunded
       │             │              │
       └─────────────┴──────────────┴──► cancelled

cancelled and refunded are terminal.
"""

from datetime import datetime
from typing import Dict, List, Optional

from app.core.exceptions import InvalidTransitionError
from app.models.order import Order, OrderStatus


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Format: current_status -> [list of allowed next statuses]
ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    OrderStatus.PENDING: [
        OrderStatus.PROCESSING,     # Picked up (usually by the scheduler)
        OrderStatus.CANCELLED,
    ],
    OrderStatus.PROCESSING: [
        OrderStatus.DELIVERING,     # Handed to the courier
        OrderStatus.CANCELLED,
    ],
    OrderStatus.DELIVERING: [
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,      # Failed delivery
    ],
    OrderStatus.DELIVERED: [
        OrderStatus.REFUNDED,
    ],
    OrderStatus.CANCELLED: [],
    OrderStatus.REFUNDED: [],
}

# Transitions that hand the order's stock back to the catalog
STOCK_RESTORING_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _coerce(status) -> Optional[OrderStatus]:
    try:
        return OrderStatus(status)
    except ValueError:
        return None


def get_allowed_transitions(current_status) -> List[OrderStatus]:
    """Get list of statuses reachable from current status."""
    current = _coerce(current_status)
    if current is None:
        return []
    return ORDER_STATUS_TRANSITIONS.get(current, [])


def can_transition(current_status, new_status) -> bool:
    """Check if a transition is allowed."""
    target = _coerce(new_status)
    return target is not None and target in get_allowed_transitions(current_status)


def is_terminal(status) -> bool:
    return not get_allowed_transitions(status)


def restores_stock(status) -> bool:
    return _coerce(status) in STOCK_RESTORING_STATUSES


def validate_transition(current_status, new_status) -> OrderStatus:
    """
    Validate a status transition.

    Raises:
        InvalidTransitionError: stating both the current and attempted status

    Returns:
        The target status as an OrderStatus
    """
    current_value = getattr(current_status, "value", current_status)
    new_value = getattr(new_status, "value", new_status)

    target = _coerce(new_status)
    if target is None:
        raise InvalidTransitionError(
            current_value, new_value, f"Unknown order status '{new_value}'"
        )

    if not can_transition(current_status, target):
        allowed = get_allowed_transitions(current_status)
        if not allowed:
            reason = (
                f"Invalid status transition from {current_value} to {new_value}: "
                f"'{current_value}' is a terminal state"
            )
        else:
            reason = (
                f"Invalid status transition from {current_value} to {new_value}. "
                f"Allowed transitions: {', '.join(s.value for s in allowed)}"
            )
        raise InvalidTransitionError(current_value, new_value, reason)

    return target


# =============================================================================
# TRANSITION EXECUTOR
# =============================================================================

def apply_transition(order: Order, new_status, now: datetime) -> OrderStatus:
    """
    Move an order to a new status.

    This function:
    1. Validates the transition is allowed
    2. Updates the status
    3. Stamps the timestamp that belongs to the new status

    Stock restoration and history rows are the caller's job.

    Raises:
        InvalidTransitionError: If transition is not allowed
    """
    target = validate_transition(order.order_status, new_status)

    order.order_status = target.value
    order.updated_at = now

    if target == OrderStatus.DELIVERED:
        order.is_delivered = True
        order.delivered_at = now

    elif target == OrderStatus.CANCELLED:
        order.cancelled_at = now

    elif target == OrderStatus.REFUNDED:
        order.refunded_at = now

    return target
