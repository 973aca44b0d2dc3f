"""UTC time helpers.

Database columns hold naive UTC (SQLite drops tzinfo); token payloads carry
aware UTC timestamps.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db(dt: datetime) -> datetime:
    """Normalize to naive UTC for storage."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def from_db(dt: datetime) -> datetime:
    """Attach UTC to a naive timestamp read back from the database."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
