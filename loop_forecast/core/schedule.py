# loop_forecast/core/schedule.py
from __future__ import annotations

from bisect import bisect_right
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Generic, TypeVar

from loop_forecast.core.errors import IncompleteScheduleCoverageError

V = TypeVar("V")


@dataclass(frozen=True)
class ScheduleEntry(Generic[V]):
    start: datetime
    end: datetime
    value: V

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"schedule entry ends before it starts: {self.start} -> {self.end}")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, t: datetime) -> bool:
        return self.start <= t < self.end


class Schedule(Generic[V]):
    """
    Immutable, time-ordered, non-overlapping interval -> value table.

    Used for basal rate (U/h), insulin sensitivity (mg/dL/U), carb ratio (g/U)
    and target range. Lookups never extrapolate past the known coverage.
    """

    def __init__(self, entries: Iterable[ScheduleEntry[V]] = (), name: str = "schedule") -> None:
        items = tuple(entries)
        for prev, cur in zip(items, items[1:]):
            if cur.start < prev.end:
                raise ValueError(f"{name} schedule entries overlap or are unordered at {cur.start}")
        self._entries = items
        self._starts = [e.start for e in items]
        self.name = name

    def __repr__(self) -> str:
        return f"Schedule(name={self.name!r}, entries={len(self._entries)})"

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ScheduleEntry[V]]:
        return iter(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Schedule):
            return NotImplemented
        return self.name == other.name and self._entries == other._entries

    def __hash__(self) -> int:
        return hash((self.name, self._entries))

    @property
    def entries(self) -> tuple[ScheduleEntry[V], ...]:
        return self._entries

    def between(self, start: datetime, end: datetime) -> list[ScheduleEntry[V]]:
        """Entries overlapping [start, end), truncated to that interval."""
        out: list[ScheduleEntry[V]] = []
        if end <= start:
            return out
        idx = max(0, bisect_right(self._starts, start) - 1)
        for entry in self._entries[idx:]:
            if entry.start >= end:
                break
            if entry.end <= start:
                continue
            out.append(ScheduleEntry(max(entry.start, start), min(entry.end, end), entry.value))
        return out

    def entry_at(self, t: datetime) -> ScheduleEntry[V] | None:
        idx = bisect_right(self._starts, t) - 1
        if idx < 0:
            return None
        entry = self._entries[idx]
        return entry if entry.contains(t) else None

    def value_at(self, t: datetime) -> V | None:
        entry = self.entry_at(t)
        return entry.value if entry is not None else None

    def closest_prior(self, t: datetime) -> V | None:
        """Value of the last entry starting at or before t, even if it already ended."""
        idx = bisect_right(self._starts, t) - 1
        if idx < 0:
            return None
        return self._entries[idx].value

    def require(self, t: datetime) -> V:
        value = self.value_at(t)
        if value is None:
            raise IncompleteScheduleCoverageError(self.name, t)
        return value

    def require_closest_prior(self, t: datetime) -> V:
        value = self.closest_prior(t)
        if value is None:
            raise IncompleteScheduleCoverageError(self.name, t)
        return value

    # -----------------------------
    # Builders
    # -----------------------------
    @classmethod
    def constant(cls, value: V, start: datetime, end: datetime, name: str = "schedule") -> Schedule[V]:
        return cls([ScheduleEntry(start, end, value)], name=name)

    @classmethod
    def daily(
        cls,
        items: Sequence[tuple[timedelta, V]],
        start: datetime,
        end: datetime,
        tz: tzinfo | None = None,
        name: str = "schedule",
    ) -> Schedule[V]:
        """
        Expand a repeating daily schedule over [start, end).

        items: (offset from local midnight, value), ascending by offset, first offset 0.
        """
        if not items:
            return cls([], name=name)
        if items[0][0] != timedelta(0):
            raise ValueError("daily schedule must start at midnight")
        offsets = [offset for offset, _ in items]
        if any(b <= a for a, b in zip(offsets, offsets[1:])) or offsets[-1] >= timedelta(days=1):
            raise ValueError("daily schedule offsets must be ascending within one day")

        tz = tz or start.tzinfo
        local_start = start.astimezone(tz) if tz is not None else start
        day = local_start.replace(hour=0, minute=0, second=0, microsecond=0)

        entries: list[ScheduleEntry[V]] = []
        while day < end:
            next_day = day + timedelta(days=1)
            for i, (offset, value) in enumerate(items):
                seg_start = day + offset
                seg_end = day + items[i + 1][0] if i + 1 < len(items) else next_day
                lo = max(seg_start, start)
                hi = min(seg_end, end)
                if lo < hi:
                    entries.append(ScheduleEntry(lo, hi, value))
            day = next_day
        return cls(entries, name=name)
