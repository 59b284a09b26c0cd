"""
Luna - Time Utilities
======================
UTC helpers shared by the stores and the orchestrator.  Every timestamp
Luna persists or compares is timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a naive *value*; aware values are returned unchanged."""
    # motor returns naive UTC datetimes unless the client is tz_aware
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
