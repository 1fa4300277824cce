"""
Utility functions for timestamps.

All persisted timestamps are timezone-aware UTC so values read back from
Postgres (TIMESTAMPTZ) compare cleanly with values produced in-process.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def utcnow_ms() -> int:
    """
    Get current UTC timestamp in milliseconds.

    Returns:
        Current timestamp in milliseconds since epoch
    """
    return int(utcnow().timestamp() * 1000)


def utcnow_iso() -> str:
    """
    Get current UTC timestamp as ISO format string.

    Returns:
        ISO format timestamp string (e.g., "2024-01-01T12:00:00.000000+00:00")
    """
    return utcnow().isoformat()


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. from SQLite or old rows) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
