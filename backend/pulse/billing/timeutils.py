"""Naive-UTC clock helpers shared by billing code.

All billing timestamps are stored as naive UTC datetimes (the columns are
``TIMESTAMP WITHOUT TIME ZONE``), so every comparison goes through these.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert a Unix timestamp (Stripe style) to a naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)
