"""Time helpers."""

from __future__ import annotations

import time
from datetime import date, datetime, timedelta, timezone


def now_ms() -> int:
    """Return current timestamp in milliseconds."""
    return int(time.time() * 1000)


def utc_now() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(tz=timezone.utc)


def utc_date(moment: datetime | None = None) -> date:
    """Calendar day of ``moment`` in UTC; the quota window key."""
    moment = moment or utc_now()
    return moment.astimezone(timezone.utc).date()


def next_utc_midnight(moment: datetime | None = None) -> datetime:
    """Start of the UTC day following ``moment``."""
    day = utc_date(moment) + timedelta(days=1)
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
