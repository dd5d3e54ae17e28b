from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

# A clock is any zero-argument callable returning an aware UTC datetime.
# Services accept one so tests can move time forward without sleeping.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime.

    Some backends (SQLite) hand timestamps back without tzinfo even though
    they were written as UTC; treat naive values as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_clock() -> Clock:
    """FastAPI dependency; tests override it to pin the time."""
    return utc_now
