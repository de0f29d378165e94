from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def validity_horizon(days: int, *, start: Optional[datetime] = None) -> datetime:
    """Expiry timestamp `days` after `start` (defaults to now)."""
    return (start or utcnow()) + timedelta(days=days)


def days_remaining(until: Optional[datetime], *, now: Optional[datetime] = None) -> int:
    """
    Whole days left before `until`, rounded up, never negative.

    Naive datetimes are treated as UTC; aware ones are normalized first.
    """
    if until is None:
        return 0
    if until.tzinfo is not None:
        until = until.astimezone(timezone.utc).replace(tzinfo=None)
    delta = until - (now or utcnow())
    if delta.total_seconds() <= 0:
        return 0
    return delta.days + (1 if delta.seconds or delta.microseconds else 0)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")
