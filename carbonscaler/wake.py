"""Requeue alignment for the reconcile loop."""

from __future__ import annotations

from datetime import datetime, timedelta


def next_tick(now: datetime, granularity_minutes: int) -> timedelta:
    """
    Delay until the next wall-clock minute that is a multiple of the granularity.

    With a granularity of 5 and ``now`` at minute 37 this is 3 minutes. When
    ``now`` already sits on a boundary the full granularity is returned, so a
    tick always advances.
    """
    if granularity_minutes <= 0:
        raise ValueError(f"granularity must be positive, got {granularity_minutes}")
    diff = granularity_minutes - (now.minute % granularity_minutes)
    return timedelta(minutes=diff)
