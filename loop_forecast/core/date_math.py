# loop_forecast/core/date_math.py
from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone

_EPOCH_UTC = datetime(1970, 1, 1, tzinfo=timezone.utc)
_EPOCH_NAIVE = datetime(1970, 1, 1)


def _offset_from_epoch(t: datetime) -> timedelta:
    if t.tzinfo is not None and t.utcoffset() is not None:
        return t - _EPOCH_UTC
    return t - _EPOCH_NAIVE


def floor_to_interval(t: datetime, interval: timedelta) -> datetime:
    """Align t down onto the grid of `interval` steps anchored at the Unix epoch."""
    return t - _offset_from_epoch(t) % interval


def ceil_to_interval(t: datetime, interval: timedelta) -> datetime:
    remainder = _offset_from_epoch(t) % interval
    if not remainder:
        return t
    return t - remainder + interval


def minutes(duration: timedelta) -> float:
    return duration.total_seconds() / 60.0


def hours(duration: timedelta) -> float:
    return duration.total_seconds() / 3600.0


def grid(start: datetime, end: datetime, delta: timedelta) -> Iterator[datetime]:
    """Yield start, start + delta, ... up to and including end."""
    t = start
    while t <= end:
        yield t
        t += delta
