"""UTC timezone enforcement.

This module sets the TZ environment variable to UTC and provides the helpers
used for every timestamp the pipeline writes. Timestamps are stored as naive
UTC datetimes so comparisons behave the same on PostgreSQL and SQLite.
"""

import os
from datetime import datetime, timezone

# Set UTC timezone for the entire application
os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Return the current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime to naive UTC.

    Aware datetimes are converted to UTC and stripped of tzinfo; naive
    datetimes are assumed to already be UTC.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
