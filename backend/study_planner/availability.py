"""Per-day availability windows net of blocked time."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Iterable, List, Sequence, Tuple

from pydantic import BaseModel, Field

from .config import SLOT_GRANULARITY_MINUTES
from .models import (
    DAY_NAMES,
    BlockedInterval,
    RecurringCommitment,
    TimePreferences,
    at_minutes,
    day_start,
    parse_clock,
)
from .timeline import FreeTimeline, Interval, merge_intervals, subtract_interval

logger = logging.getLogger(__name__)


class DayAvailability(BaseModel):
    """Study window for one date and what is left of it after blocked time."""

    day: date
    earliest: datetime
    latest: datetime
    window_minutes: int
    blocked_minutes: int
    available_minutes: int
    open_intervals: List[Tuple[datetime, datetime]] = Field(default_factory=list)

    @property
    def day_name(self) -> str:
        return DAY_NAMES[self.day.weekday()]


def expand_recurring_commitments(
    commitments: Sequence[RecurringCommitment],
    first_day: date,
    days: int,
) -> List[BlockedInterval]:
    """Materialise weekly commitments into concrete intervals for each covered date."""
    expanded: List[BlockedInterval] = []
    for offset in range(days):
        current = first_day + timedelta(days=offset)
        for commitment in commitments:
            if not commitment.applies_on(current):
                continue
            start = at_minutes(current, parse_clock(commitment.start_time))
            end = at_minutes(current, parse_clock(commitment.end_time))
            if end <= start:
                logger.debug(
                    "Skipping recurring commitment %s on %s: end %s is not after start %s",
                    commitment.event_id or commitment.label,
                    current,
                    commitment.end_time,
                    commitment.start_time,
                )
                continue
            expanded.append(
                BlockedInterval(
                    start=start,
                    end=end,
                    source="recurring",
                    label=commitment.label,
                    event_id=commitment.event_id,
                )
            )
    return expanded


def dedupe_blocked_intervals(intervals: Iterable[BlockedInterval]) -> List[BlockedInterval]:
    """Drop invalid intervals and exact (start, end) duplicates, keeping the first seen."""
    seen = set()
    unique: List[BlockedInterval] = []
    for interval in intervals:
        if not interval.is_valid:
            continue
        key = (interval.start, interval.end)
        if key in seen:
            continue
        seen.add(key)
        unique.append(interval)
    unique.sort(key=lambda item: (item.start, item.end))
    return unique


def collect_blocked_intervals(
    explicit: Iterable[BlockedInterval],
    commitments: Sequence[RecurringCommitment],
    first_day: date,
    days: int,
) -> List[BlockedInterval]:
    """Explicit intervals overlapping the range plus expanded recurring ones, deduplicated."""
    range_start = day_start(first_day)
    range_end = day_start(first_day + timedelta(days=days))
    relevant = [item for item in explicit if item.is_valid and item.overlaps(range_start, range_end)]
    return dedupe_blocked_intervals(
        [*relevant, *expand_recurring_commitments(commitments, first_day, days)]
    )


class AvailabilityCalculator:
    """Computes the study window per date and subtracts blocked intervals from it."""

    def __init__(self, granularity_minutes: int = SLOT_GRANULARITY_MINUTES) -> None:
        self._granularity = granularity_minutes

    def window_for(self, preferences: TimePreferences, day: date) -> Interval:
        earliest, latest = preferences.window_minutes(day)
        step = self._granularity
        earliest = -(-earliest // step) * step
        latest = (latest // step) * step
        if latest < earliest:
            latest = earliest
        return at_minutes(day, earliest), at_minutes(day, latest)

    def day_availability(
        self,
        preferences: TimePreferences,
        day: date,
        blocked: Iterable[BlockedInterval],
    ) -> DayAvailability:
        window_start, window_end = self.window_for(preferences, day)
        clipped = []
        for interval in dedupe_blocked_intervals(blocked):
            start = max(interval.start, window_start)
            end = min(interval.end, window_end)
            if end > start:
                clipped.append((start, end))
        merged = merge_intervals(clipped)

        open_intervals: List[Interval] = (
            [(window_start, window_end)] if window_end > window_start else []
        )
        for start, end in merged:
            open_intervals = subtract_interval(open_intervals, start, end)

        window_minutes = int((window_end - window_start).total_seconds() // 60)
        blocked_minutes = int(sum((end - start).total_seconds() for start, end in merged) // 60)
        return DayAvailability(
            day=day,
            earliest=window_start,
            latest=window_end,
            window_minutes=window_minutes,
            blocked_minutes=blocked_minutes,
            available_minutes=max(0, window_minutes - blocked_minutes),
            open_intervals=open_intervals,
        )

    def days(
        self,
        preferences: TimePreferences,
        first_day: date,
        count: int,
        blocked: Sequence[BlockedInterval],
    ) -> List[DayAvailability]:
        return [
            self.day_availability(preferences, first_day + timedelta(days=offset), blocked)
            for offset in range(count)
        ]

    def week(
        self,
        preferences: TimePreferences,
        week_start: date,
        blocked: Sequence[BlockedInterval],
    ) -> List[DayAvailability]:
        return self.days(preferences, week_start, 7, blocked)

    def timeline(
        self,
        availability: Iterable[DayAvailability],
        *,
        occupied: Iterable[Interval] = (),
        sessions: Iterable[Interval] = (),
    ) -> FreeTimeline:
        return FreeTimeline.from_open_intervals(
            {entry.day: list(entry.open_intervals) for entry in availability},
            occupied=occupied,
            sessions=sessions,
            granularity_minutes=self._granularity,
        )


__all__ = [
    "AvailabilityCalculator",
    "DayAvailability",
    "collect_blocked_intervals",
    "dedupe_blocked_intervals",
    "expand_recurring_commitments",
]
