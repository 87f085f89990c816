"""
Delivery estimate helper.

Counts business days forward from the order date, skipping weekends and
the fixed-date holidays in settings.DELIVERY_HOLIDAYS. Used once by
OrderService.create_order; the estimate is stored with the order.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
import math
from typing import Iterable, Optional

from app.config import settings


@dataclass(frozen=True)
class DeliveryEstimate:
    start: datetime
    end: datetime
    estimated: datetime
    min_days: int
    max_days: int


def is_business_day(day: datetime, holidays: Optional[Iterable[str]] = None) -> bool:
    """Monday to Friday and not a listed MM-DD holiday."""
    if day.weekday() >= 5:  # Saturday/Sunday
        return False
    holidays = settings.DELIVERY_HOLIDAYS if holidays is None else holidays
    return day.strftime("%m-%d") not in set(holidays)


def add_business_days(start: datetime, days: int, holidays: Optional[Iterable[str]] = None) -> datetime:
    """Move forward one calendar day at a time until `days` business days have passed."""
    holidays = list(settings.DELIVERY_HOLIDAYS if holidays is None else holidays)
    result = start
    added = 0
    while added < days:
        result += timedelta(days=1)
        if is_business_day(result, holidays):
            added += 1
    return result


def calculate_delivery_estimate(
    order_date: datetime,
    min_days: Optional[int] = None,
    max_days: Optional[int] = None,
) -> DeliveryEstimate:
    """
    Delivery window for an order placed at order_date.

    The single estimated date sits in the middle of the window, rounded up.
    """
    min_days = settings.DELIVERY_MIN_BUSINESS_DAYS if min_days is None else min_days
    max_days = settings.DELIVERY_MAX_BUSINESS_DAYS if max_days is None else max_days
    midpoint = math.ceil((min_days + max_days) / 2)

    return DeliveryEstimate(
        start=add_business_days(order_date, min_days),
        end=add_business_days(order_date, max_days),
        estimated=add_business_days(order_date, midpoint),
        min_days=min_days,
        max_days=max_days,
    )
