"""Utility functions for the backend application."""

from datetime import datetime, timezone
from typing import Optional


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix.

    Examples:
        >>> utc_timestamp(datetime(2026, 2, 17, 8, 30, tzinfo=timezone.utc))
        '2026-02-17T08:30:00.000Z'
    """
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
