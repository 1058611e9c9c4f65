"""Timezone-aware datetime helpers.

Some drivers (SQLite) return naive datetimes even for timezone-aware
columns; values read back from the database go through ``ensure_utc``
before they are compared with ``utcnow()``.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time with tzinfo set."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Make a datetime timezone-aware in UTC. Naive values are taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


__all__ = [
    "ensure_utc",
    "utcnow",
]
