"""Refund window closes 3 hours before the workshop."""

from datetime import datetime, timedelta, timezone

from waxhands_api.billing.refund_policy import hours_until, refund_window_open

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def test_window_open_more_than_three_hours_ahead():
    assert refund_window_open(NOW + timedelta(hours=3, minutes=1), NOW) is True


def test_window_closed_at_exactly_three_hours():
    assert refund_window_open(NOW + timedelta(hours=3), NOW) is False


def test_window_closed_after_workshop_started():
    assert refund_window_open(NOW - timedelta(hours=1), NOW) is False


def test_unknown_workshop_date_closes_window():
    assert refund_window_open(None, NOW) is False


def test_naive_dates_are_treated_as_utc():
    naive = (NOW + timedelta(hours=5)).replace(tzinfo=None)

    assert refund_window_open(naive, NOW) is True
    assert hours_until(naive, NOW) == 5.0


def test_hours_until_never_negative():
    assert hours_until(NOW - timedelta(hours=2), NOW) == 0.0
    assert hours_until(NOW + timedelta(minutes=90), NOW) == 1.5
