"""UTC helpers; every stored and compared timestamp is UTC."""

from __future__ import annotations

from datetime import datetime, timezone


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive values as UTC (as loaded from SQLite) and normalize aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(timezone.utc)


def day_key(value: datetime) -> str:
    """Return the UTC calendar day of a timestamp as YYYY-MM-DD."""
    return ensure_utc(value).strftime("%Y-%m-%d")
