"""Refund eligibility rules."""

from datetime import datetime, timedelta, timezone
from typing import Optional

# Refunds close this long before the workshop starts
REFUND_CUTOFF = timedelta(hours=3)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; stored values are always UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def hours_until(workshop_date: datetime, now: Optional[datetime] = None) -> float:
    """Hours from now until the workshop, never negative, rounded to 0.1."""
    now = now or datetime.now(timezone.utc)
    delta = _as_utc(workshop_date) - _as_utc(now)
    return max(0.0, round(delta.total_seconds() / 3600, 1))


def refund_window_open(workshop_date: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True if the workshop starts more than REFUND_CUTOFF after now."""
    if workshop_date is None:
        return False
    now = now or datetime.now(timezone.utc)
    return _as_utc(workshop_date) - _as_utc(now) > REFUND_CUTOFF
