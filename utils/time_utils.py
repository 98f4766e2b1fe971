"""Time helpers.

Keep all timestamps consistent and timezone-aware.
Python 3.13 deprecates naive UTC helpers like datetime.utcnow(); use this module instead.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current time as a timezone-aware datetime in UTC (+00:00)."""

    return datetime.now(timezone.utc)


def utcnow_sa_default() -> datetime:
    """SQLAlchemy default callable for UTC timestamps."""

    return utcnow()


def ensure_utc(dt: datetime) -> datetime:
    """Return a timezone-aware UTC datetime.

    SQLite hands DateTime columns back naive; those are treated as UTC.
    """

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_utc(dt: datetime | None) -> str | None:
    """Serialize a (possibly naive) UTC datetime for API payloads and SSE."""

    if dt is None:
        return None
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")
