"""Datetime helpers.

All persisted timestamps are naive UTC datetimes, stored in plain
``DateTime`` columns (no timezone) declared on every model field.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta


def utcnow() -> datetime:
    """Return current UTC time as a naive datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def utc_after(seconds: float) -> datetime:
    """Naive UTC datetime ``seconds`` from now."""
    return utcnow() + timedelta(seconds=seconds)


def utc_before(seconds: float) -> datetime:
    """Naive UTC datetime ``seconds`` ago."""
    return utcnow() - timedelta(seconds=seconds)
