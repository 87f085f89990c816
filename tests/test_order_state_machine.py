from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from app.core.exceptions import InvalidTransitionError
from app.models.order import OrderStatus
from app.services.order_state_machine import (
    apply_transition,
    can_transition,
    get_allowed_transitions,
    is_terminal,
    restores_stock,
    validate_transition,
)

NOW = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

ALLOWED = {
    ("pending", "processing"),
    ("pending", "cancelled"),
    ("processing", "delivering"),
    ("processing", "cancelled"),
    ("delivering", "delivered"),
    ("delivering", "cancelled"),
    ("delivered", "refunded"),
}


def make_order(status):
    return SimpleNamespace(
        order_status=status,
        updated_at=None,
        is_delivered=False,
        delivered_at=None,
        cancelled_at=None,
        refunded_at=None,
    )


@pytest.mark.parametrize("current", [s.value for s in OrderStatus])
@pytest.mark.parametrize("target", [s.value for s in OrderStatus])
def test_transition_table(current, target):
    assert can_transition(current, target) == ((current, target) in ALLOWED)


@pytest.mark.parametrize("status", ["cancelled", "refunded"])
def test_terminal_states(status):
    assert is_terminal(status)
    assert get_allowed_transitions(status) == []


def test_delivered_is_not_terminal():
    assert not is_terminal(OrderStatus.DELIVERED)


def test_only_cancel_and_refund_restore_stock():
    assert {s for s in OrderStatus if restores_stock(s)} == {OrderStatus.CANCELLED, OrderStatus.REFUNDED}


def test_validate_transition_names_both_statuses():
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_transition("pending", "delivered")

    error = exc_info.value
    assert error.current_status == "pending"
    assert error.attempted_status == "delivered"
    assert "Allowed transitions: processing, cancelled" in error.message
    assert error.to_dict()["attempted_status"] == "delivered"


def test_validate_transition_unknown_status():
    with pytest.raises(InvalidTransitionError, match="Unknown order status 'shipped'"):
        validate_transition(OrderStatus.PENDING, "shipped")


def test_unknown_current_status_allows_nothing():
    assert get_allowed_transitions("lost") == []
    assert not can_transition("lost", "processing")


def test_apply_transition_stamps_delivery():
    order = make_order("delivering")

    target = apply_transition(order, "delivered", NOW)

    assert target is OrderStatus.DELIVERED
    assert order.order_status == "delivered"
    assert order.is_delivered is True
    assert order.delivered_at == NOW
    assert order.updated_at == NOW


@pytest.mark.parametrize(
    "current, target, stamped",
    [
        ("processing", OrderStatus.CANCELLED, "cancelled_at"),
        ("delivered", OrderStatus.REFUNDED, "refunded_at"),
    ],
)
def test_apply_transition_stamps_terminal_time(current, target, stamped):
    order = make_order(current)

    apply_transition(order, target, NOW)

    assert getattr(order, stamped) == NOW
    assert order.is_delivered is False


def test_apply_transition_leaves_order_untouched_on_error():
    order = make_order("cancelled")

    with pytest.raises(InvalidTransitionError, match="terminal"):
        apply_transition(order, OrderStatus.PROCESSING, NOW)

    assert order.order_status == "cancelled"
    assert order.updated_at is None
