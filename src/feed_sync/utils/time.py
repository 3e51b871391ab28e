# src/feed_sync/utils/time.py
"""Time utilities for records and optimistic placeholders."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)
