"""
quota_ledger/features/usage/window.py

Reset windows, evaluated lazily at access time (no scheduler).

- daily: calendar-day boundary in QUOTA_RESET_TIMEZONE
- weekly / monthly: rolling 7 / 30 days since the last reset
"""

from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from quota_ledger.core.config import settings
from quota_ledger.core.errors import ConfigurationError
from quota_ledger.models.dimension import Cadence, coerce_dimension


def as_utc(value: datetime) -> datetime:
    """Naive datetimes (SQLite) are UTC by convention."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_now(now: Optional[datetime] = None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return as_utc(now)


def reference_timezone() -> tzinfo:
    name = settings.QUOTA_RESET_TIMEZONE or "UTC"
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(f"Unknown QUOTA_RESET_TIMEZONE: {name!r}")


def needs_reset(dimension, last_reset: datetime, now: datetime, *, tz: Optional[tzinfo] = None) -> bool:
    """True when the counter's window has elapsed at `now`.

    Never true for a `now` earlier than `last_reset`, so resets only move forward.
    """
    last = as_utc(last_reset)
    current = as_utc(now)
    if current < last:
        return False

    cadence = coerce_dimension(dimension).cadence
    if cadence is Cadence.DAILY:
        zone = tz or reference_timezone()
        return current.astimezone(zone).date() != last.astimezone(zone).date()

    return current - last >= timedelta(days=cadence.days)


def next_reset_at(dimension, last_reset: datetime, *, tz: Optional[tzinfo] = None) -> datetime:
    """Earliest instant at which needs_reset becomes true (UTC)."""
    last = as_utc(last_reset)
    cadence = coerce_dimension(dimension).cadence
    if cadence is Cadence.DAILY:
        zone = tz or reference_timezone()
        local_day = last.astimezone(zone).date() + timedelta(days=1)
        return datetime.combine(local_day, time.min, tzinfo=zone).astimezone(timezone.utc)
    return last + timedelta(days=cadence.days)
