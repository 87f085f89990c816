"""
Checkout pricing helper.

Used once by OrderService.create_order when a client submits an order
without totals. Stored totals are never recomputed afterwards.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Tuple

from app.config import settings

TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class OrderTotals:
    items_price: Decimal
    tax_price: Decimal
    shipping_price: Decimal
    total_price: Decimal


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def calculate_shipping_price(items_price: Decimal) -> Decimal:
    """Free shipping at or above the threshold, flat fee below it."""
    if items_price >= settings.FREE_SHIPPING_THRESHOLD:
        return _money(0)
    return _money(settings.DEFAULT_SHIPPING_PRICE)


def calculate_order_totals(
    lines: Iterable[Tuple[Decimal, int]],
    tax_rate: Optional[Decimal] = None,
) -> OrderTotals:
    """
    Compute checkout totals.

    Args:
        lines: (unit price, quantity) pairs
        tax_rate: Fraction applied to the items price (default: settings.ORDER_TAX_RATE)

    Returns:
        OrderTotals with every amount rounded to two places
    """
    rate = settings.ORDER_TAX_RATE if tax_rate is None else Decimal(str(tax_rate))

    items_price = _money(sum((Decimal(str(price)) * quantity for price, quantity in lines), Decimal("0")))
    tax_price = _money(items_price * rate)
    shipping_price = calculate_shipping_price(items_price)

    return OrderTotals(
        items_price=items_price,
        tax_price=tax_price,
        shipping_price=shipping_price,
        total_price=_money(items_price + tax_price + shipping_price),
    )
