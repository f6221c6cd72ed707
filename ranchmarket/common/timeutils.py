from __future__ import annotations

"""
UTC helpers for values read back from Firestore documents and gateway payloads.

Stored timestamps arrive as `DatetimeWithNanoseconds`, naive datetimes written by
older clients (treated as UTC), ISO strings, or epoch numbers (milliseconds when
>= 1e12, seconds otherwise).
"""

from datetime import datetime, timezone
from typing import Any, Optional

_EPOCH_MS_THRESHOLD = 1e12


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Any) -> Optional[datetime]:
    """Coerce a stored timestamp to an aware UTC datetime, or None when it can't be read."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value >= _EPOCH_MS_THRESHOLD else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def is_due(value: Any, now: datetime) -> bool:
    """True when `value` is a readable timestamp at or before `now`. Missing deadlines are never due."""
    at = as_utc(value)
    return at is not None and at <= now


def utc_day(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d")


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0
