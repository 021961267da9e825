"""
UTC helpers.

SQLite drops tzinfo on DateTime(timezone=True) columns, PostgreSQL keeps it.
Everything that compares stored timestamps goes through as_utc().
"""
from datetime import datetime, UTC
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones to UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
