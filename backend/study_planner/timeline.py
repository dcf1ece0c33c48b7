"""Free-time bookkeeping shared by the weekly builder and the missed-session rebalancer."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .config import CLUSTER_BREAK_MINUTES, MAX_CLUSTER_SESSIONS, SLOT_GRANULARITY_MINUTES
from .models import day_start, ensure_utc

Interval = Tuple[datetime, datetime]


def subtract_interval(intervals: List[Interval], start: datetime, end: datetime) -> List[Interval]:
    """Remove ``[start, end)`` from a sorted list of disjoint intervals."""
    if end <= start:
        return list(intervals)
    remaining: List[Interval] = []
    for open_start, open_end in intervals:
        if end <= open_start or start >= open_end:
            remaining.append((open_start, open_end))
            continue
        if open_start < start:
            remaining.append((open_start, start))
        if end < open_end:
            remaining.append((end, open_end))
    return remaining


def merge_intervals(intervals: Iterable[Interval]) -> List[Interval]:
    merged: List[Interval] = []
    for start, end in sorted(intervals):
        if end <= start:
            continue
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
            continue
        merged.append((start, end))
    return merged


class FreeTimeline:
    """Open intervals per calendar day, snapped to the slot granularity when queried.

    Placed sessions are also tracked per day. Sessions closer together than
    ``break_minutes`` form one cluster, and no start is offered that would grow a
    cluster past ``max_cluster_sessions``.
    """

    def __init__(
        self,
        granularity_minutes: int = SLOT_GRANULARITY_MINUTES,
        *,
        max_cluster_sessions: Optional[int] = MAX_CLUSTER_SESSIONS,
        break_minutes: int = CLUSTER_BREAK_MINUTES,
    ) -> None:
        if max_cluster_sessions is not None and max_cluster_sessions < 1:
            raise ValueError("max_cluster_sessions must be at least 1.")
        self._granularity = timedelta(minutes=granularity_minutes)
        self._max_cluster = max_cluster_sessions
        self._break = timedelta(minutes=break_minutes)
        self._days: Dict[date, List[Interval]] = {}
        self._sessions: Dict[date, List[Interval]] = {}

    @classmethod
    def from_open_intervals(
        cls,
        open_intervals: Dict[date, List[Interval]],
        *,
        occupied: Iterable[Interval] = (),
        sessions: Iterable[Interval] = (),
        granularity_minutes: int = SLOT_GRANULARITY_MINUTES,
        max_cluster_sessions: Optional[int] = MAX_CLUSTER_SESSIONS,
    ) -> "FreeTimeline":
        timeline = cls(granularity_minutes, max_cluster_sessions=max_cluster_sessions)
        for day, intervals in open_intervals.items():
            timeline.set_day(day, intervals)
        for start, end in occupied:
            timeline.occupy(start, end)
        for start, end in sessions:
            timeline.place(start, end)
        return timeline

    def set_day(self, day: date, intervals: Iterable[Interval]) -> None:
        self._days[day] = merge_intervals(
            (ensure_utc(start), ensure_utc(end)) for start, end in intervals
        )

    def days(self) -> List[date]:
        return sorted(self._days)

    def open_intervals(self, day: date) -> List[Interval]:
        return list(self._days.get(day, []))

    def is_free(self, start: datetime, end: datetime) -> bool:
        start, end = ensure_utc(start), ensure_utc(end)
        for open_start, open_end in self._days.get(start.date(), []):
            if open_start <= start and end <= open_end:
                return True
        return False

    def occupy(self, start: datetime, end: datetime) -> None:
        start, end = ensure_utc(start), ensure_utc(end)
        if end <= start:
            return
        day = start.date()
        last = end.date()
        while day <= last:
            if day in self._days:
                self._days[day] = subtract_interval(self._days[day], start, end)
            day += timedelta(days=1)

    def place(self, start: datetime, end: datetime) -> None:
        """Occupy ``[start, end)`` as a study session that counts towards clusters."""
        start, end = ensure_utc(start), ensure_utc(end)
        if end <= start:
            return
        self.occupy(start, end)
        self._sessions.setdefault(start.date(), []).append((start, end))

    def cluster_size(self, start: datetime, end: datetime) -> int:
        """Size of the cluster a session at ``[start, end)`` would belong to."""
        start, end = ensure_utc(start), ensure_utc(end)
        placed = sorted(self._sessions.get(start.date(), []) + [(start, end)])
        size = 0
        found = False
        previous_end: Optional[datetime] = None
        for item_start, item_end in placed:
            if previous_end is None or item_start - previous_end >= self._break:
                if found:
                    break
                size = 0
            size += 1
            if (item_start, item_end) == (start, end):
                found = True
            previous_end = item_end if previous_end is None else max(previous_end, item_end)
        return size

    def _exceeds_cluster(self, start: datetime, end: datetime) -> bool:
        if self._max_cluster is None:
            return False
        return self.cluster_size(start, end) > self._max_cluster

    def occupy_before(self, moment: datetime) -> None:
        """Close every open interval earlier than ``moment``."""
        moment = ensure_utc(moment)
        for day in self.days():
            if day > moment.date():
                break
            self.occupy(day_start(day), moment)

    def _align(self, day: date, moment: datetime) -> datetime:
        base = day_start(day)
        step = self._granularity.total_seconds()
        offset = (moment - base).total_seconds()
        slots = -(-offset // step)
        return base + timedelta(seconds=slots * step)

    def candidate_starts(
        self,
        day: date,
        duration: timedelta,
        *,
        after: Optional[datetime] = None,
    ) -> Iterator[datetime]:
        """Yield aligned start times on ``day`` whose whole duration is free.

        ``after`` is exclusive: only starts strictly later than it are produced.
        Starts that would make a cluster too long are skipped.
        """
        for open_start, open_end in self._days.get(day, []):
            cursor = self._align(day, open_start)
            while cursor + duration <= open_end:
                if (after is None or cursor > after) and not self._exceeds_cluster(
                    cursor, cursor + duration
                ):
                    yield cursor
                cursor += self._granularity

    def slot_capacity(self, day: date, duration: timedelta) -> int:
        """How many non-overlapping sessions of ``duration`` fit into the day's free time.

        Cluster breaks are not subtracted; this is the raw slot count the buffer applies to.
        """
        count = 0
        for open_start, open_end in self._days.get(day, []):
            cursor = self._align(day, open_start)
            while cursor + duration <= open_end:
                count += 1
                cursor += duration
        return count

    def free_minutes(self, day: date) -> int:
        return int(
            sum((end - start).total_seconds() for start, end in self._days.get(day, [])) // 60
        )


__all__ = ["FreeTimeline", "Interval", "merge_intervals", "subtract_interval"]
