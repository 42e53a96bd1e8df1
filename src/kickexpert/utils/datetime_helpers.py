"""Timezone helpers.

SQLite hands back naive datetimes for ``DateTime(timezone=True)`` columns;
everything stored by this service is UTC, so naive values are read as UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Return ``dt`` as a UTC-aware datetime, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
