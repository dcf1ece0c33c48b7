"""Weekly spaced-repetition schedule construction."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from time import perf_counter
from typing import Dict, List, Optional, Set, Tuple

from .availability import AvailabilityCalculator, DayAvailability, collect_blocked_intervals
from .config import SLOT_GRANULARITY_MINUTES
from .models import (
    DAY_NAMES,
    GeneratedSession,
    GenerationRequest,
    SessionPlan,
    SessionRationale,
    WeeklyPlanResult,
)
from .telemetry import emit_event
from .timeline import FreeTimeline
from .topic_planner import TopicSessionPlanner, planner as default_planner

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_FRACTION = 0.2


@dataclass
class _TopicProgress:
    topic_id: str
    rating: int
    plan: SessionPlan
    session_total: int
    next_number: int
    last_session_at: Optional[datetime]
    ongoing: bool
    priority: bool
    order_index: int
    placed_days: Set[date] = field(default_factory=set)

    @property
    def remaining(self) -> int:
        return max(0, self.session_total - self.next_number + 1)


def build_rationale(rating: int, plan: SessionPlan, number: int, total: int) -> SessionRationale:
    if plan.session_type == "exam":
        label = "Exam Practice"
        explanation = (
            f"High confidence rating ({rating}). Scheduled exam-practice session to keep knowledge sharp."
        )
    else:
        label = f"Revision Block {number}/{total}"
        explanation = (
            f"Confidence rating {rating}. This is spaced repetition block {number} of {total} "
            "to reinforce learning."
        )
    return SessionRationale(
        rating=rating,
        session_number=number,
        session_total=total,
        session_type=plan.session_type,
        label=label,
        explanation=explanation,
    )


class WeeklyScheduleBuilder:
    """Places each topic's sessions into free slots of the target week.

    Ordering is deterministic: topics with the lowest rating go first, ongoing
    sequences before fresh ones, explicit priority topics before the rest, then
    the caller's topic order and finally the topic id.
    """

    def __init__(
        self,
        *,
        topic_planner: Optional[TopicSessionPlanner] = None,
        calculator: Optional[AvailabilityCalculator] = None,
        buffer_fraction: float = DEFAULT_BUFFER_FRACTION,
        granularity_minutes: int = SLOT_GRANULARITY_MINUTES,
    ) -> None:
        if not 0 <= buffer_fraction < 1:
            raise ValueError("buffer_fraction must be within [0, 1).")
        self._planner = topic_planner or default_planner
        self._calculator = calculator or AvailabilityCalculator(granularity_minutes)
        self._buffer_fraction = buffer_fraction

    def build(self, request: GenerationRequest) -> WeeklyPlanResult:
        started = perf_counter()
        week_start = request.target_week_start
        progress, excluded, not_yet_learned = self._topic_progress(request)

        if not progress:
            result = WeeklyPlanResult(
                week_start=week_start,
                status="nothing_to_schedule",
                excluded_topics=excluded,
                not_yet_learned_topics=not_yet_learned,
            )
            self._emit(request, result, started)
            return result

        blocked = collect_blocked_intervals(
            request.blocked_times, request.recurring_commitments, week_start, 7
        )
        days = self._calculator.week(request.time_preferences, week_start, blocked)
        timeline = self._calculator.timeline(days)
        if request.not_before is not None:
            timeline.occupy_before(request.not_before)

        duration = timedelta(minutes=request.session_duration_minutes)
        capacity = self._daily_capacity(days, timeline, request, duration)
        used: Dict[date, int] = {entry.day: 0 for entry in days}

        sessions: List[GeneratedSession] = []
        for topic in sorted(progress, key=self._urgency_key):
            self._place_topic(topic, timeline, capacity, used, duration, week_start, sessions)

        sessions.sort(key=lambda entry: (entry.scheduled_at, entry.topic_id or ""))
        deferred = {topic.topic_id: topic.remaining for topic in progress if topic.remaining}
        if not sessions:
            status = "insufficient_capacity"
        elif deferred:
            status = "partial"
        else:
            status = "complete"

        result = WeeklyPlanResult(
            week_start=week_start,
            status=status,
            sessions=sessions,
            deferred_topics=dict(sorted(deferred.items())),
            excluded_topics=excluded,
            not_yet_learned_topics=not_yet_learned,
        )
        if deferred:
            logger.info(
                "Deferred %d topic(s) for week %s: %s",
                len(deferred),
                week_start.isoformat(),
                ", ".join(sorted(deferred)),
            )
        self._emit(request, result, started)
        return result

    def _topic_progress(
        self, request: GenerationRequest
    ) -> Tuple[List[_TopicProgress], List[str], List[str]]:
        allowed_subjects = set(request.subjects)
        order_index = {topic_id: index for index, topic_id in enumerate(request.topic_order)}
        priority = set(request.priority_topic_ids)

        progress: List[_TopicProgress] = []
        excluded: List[str] = []
        not_yet_learned: List[str] = []
        for topic_id in sorted(request.ratings):
            rating = request.ratings[topic_id]
            subject = request.topic_subjects.get(topic_id)
            if allowed_subjects and subject is not None and subject not in allowed_subjects:
                continue
            disposition = self._planner.disposition(rating)
            if disposition == "excluded":
                excluded.append(topic_id)
                continue
            if disposition == "not_yet_learned":
                not_yet_learned.append(topic_id)
                continue

            plan = self._planner.plan_for(rating)
            if plan is None:
                continue
            state = request.ongoing_topics.get(topic_id)
            if state is not None and state.rating == rating and state.is_ongoing:
                total = state.sessions_required
                next_number = state.sessions_scheduled + 1
                last_at: Optional[datetime] = state.last_session_date
                ongoing = True
            else:
                total = plan.session_total
                next_number = 1
                last_at = None
                ongoing = False
            progress.append(
                _TopicProgress(
                    topic_id=topic_id,
                    rating=rating,
                    plan=plan,
                    session_total=total,
                    next_number=next_number,
                    last_session_at=last_at,
                    ongoing=ongoing,
                    priority=topic_id in priority,
                    order_index=order_index.get(topic_id, len(order_index)),
                )
            )
        return progress, excluded, not_yet_learned

    @staticmethod
    def _urgency_key(topic: _TopicProgress) -> Tuple[int, int, int, int, str]:
        return (
            topic.rating,
            0 if topic.ongoing else 1,
            0 if topic.priority else 1,
            topic.order_index,
            topic.topic_id,
        )

    def _daily_capacity(
        self,
        days: List[DayAvailability],
        timeline: FreeTimeline,
        request: GenerationRequest,
        duration: timedelta,
    ) -> Dict[date, int]:
        session_minutes = request.session_duration_minutes
        capacity: Dict[date, int] = {}
        for entry in days:
            slots = timeline.slot_capacity(entry.day, duration)
            if request.daily_hours:
                hours = request.daily_hours.get(DAY_NAMES[entry.day.weekday()], 0.0)
                slots = min(slots, int(hours * 60 // session_minutes))
            if slots <= 0:
                capacity[entry.day] = 0
                continue
            capacity[entry.day] = max(1, math.floor(slots * (1 - self._buffer_fraction)))
        return capacity

    def _earliest_day(self, topic: _TopicProgress, week_start: date) -> date:
        if topic.last_session_at is None:
            return week_start
        gap = topic.plan.gap_after(topic.next_number - 1)
        return max(week_start, topic.last_session_at.date() + timedelta(days=gap))

    def _place_topic(
        self,
        topic: _TopicProgress,
        timeline: FreeTimeline,
        capacity: Dict[date, int],
        used: Dict[date, int],
        duration: timedelta,
        week_start: date,
        sessions: List[GeneratedSession],
    ) -> None:
        week_end = week_start + timedelta(days=6)
        while topic.remaining:
            allowed_weekdays = None
            if not topic.ongoing and topic.next_number == 1:
                allowed_weekdays = topic.plan.first_session_weekdays

            slot = None
            current = self._earliest_day(topic, week_start)
            while slot is None and current <= week_end:
                if (
                    (allowed_weekdays is None or current.weekday() in allowed_weekdays)
                    and used.get(current, 0) < capacity.get(current, 0)
                    and current not in topic.placed_days
                ):
                    slot = next(timeline.candidate_starts(current, duration), None)
                current += timedelta(days=1)

            if slot is None:
                return

            timeline.place(slot, slot + duration)
            used[slot.date()] = used.get(slot.date(), 0) + 1
            topic.placed_days.add(slot.date())
            sessions.append(
                GeneratedSession(
                    topic_id=topic.topic_id,
                    scheduled_at=slot,
                    duration_minutes=int(duration.total_seconds() // 60),
                    rationale=build_rationale(
                        topic.rating, topic.plan, topic.next_number, topic.session_total
                    ),
                )
            )
            topic.last_session_at = slot
            topic.next_number += 1

    def _emit(self, request: GenerationRequest, result: WeeklyPlanResult, started: float) -> None:
        emit_event(
            "plan_generation",
            week_start=result.week_start,
            status=result.status,
            topics=len(request.ratings),
            sessions=len(result.sessions),
            deferred=len(result.deferred_topics),
            duration_ms=round((perf_counter() - started) * 1000, 2),
        )


__all__ = ["DEFAULT_BUFFER_FRACTION", "WeeklyScheduleBuilder", "build_rationale"]
