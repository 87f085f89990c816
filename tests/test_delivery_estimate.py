from datetime import datetime, timezone

from app.services.delivery_estimate import add_business_days, calculate_delivery_estimate, is_business_day


def at(year, month, day, hour=9):
    return datetime(year, month, day, hour, 0, tzinfo=timezone.utc)


def test_weekends_are_not_business_days():
    assert is_business_day(at(2026, 1, 16)) is True   # Friday
    assert is_business_day(at(2026, 1, 17)) is False  # Saturday
    assert is_business_day(at(2026, 1, 18)) is False  # Sunday


def test_listed_holidays_are_not_business_days():
    assert is_business_day(at(2026, 9, 2)) is False
    assert is_business_day(at(2026, 9, 2), holidays=[]) is True


def test_window_crosses_a_weekend():
    # Thursday order: Fri is day 1, Mon day 2, Tue day 3, Wed day 4
    estimate = calculate_delivery_estimate(at(2026, 1, 15), min_days=2, max_days=4)

    assert estimate.start == at(2026, 1, 19)
    assert estimate.estimated == at(2026, 1, 20)
    assert estimate.end == at(2026, 1, 21)
    assert (estimate.min_days, estimate.max_days) == (2, 4)


def test_holidays_push_the_window_back():
    # Apr 30 and May 1 are holidays, then the weekend
    assert add_business_days(at(2026, 4, 29), 2) == at(2026, 5, 5)


def test_friday_evening_order_keeps_time_of_day():
    assert add_business_days(at(2026, 1, 16, hour=22), 1) == at(2026, 1, 19, hour=22)


def test_odd_window_rounds_the_estimate_up():
    estimate = calculate_delivery_estimate(at(2026, 1, 12), min_days=1, max_days=2)

    assert estimate.estimated == estimate.end
