"""Recovery of missed sessions into the next compliant free slot."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from .availability import AvailabilityCalculator
from .config import SLOT_GRANULARITY_MINUTES
from .models import BlockedInterval, RescheduleOutcome, StudySession, TimePreferences
from .telemetry import emit_event

logger = logging.getLogger(__name__)

DEFAULT_HORIZON_DAYS = 14


@dataclass
class RebalanceResult:
    outcome: RescheduleOutcome
    updates: List[StudySession] = field(default_factory=list)


def dependent_sessions(missed: StudySession, candidates: Iterable[StudySession]) -> List[StudySession]:
    """Still-scheduled later sessions of the missed session's topic sequence."""
    if missed.rationale is None or not missed.topic_id:
        return []
    number = missed.rationale.session_number
    total = missed.rationale.session_total
    dependants = [
        session
        for session in candidates
        if session.id != missed.id
        and session.user_id == missed.user_id
        and session.topic_id == missed.topic_id
        and session.status == "scheduled"
        and session.rationale is not None
        and session.rationale.session_total == total
        and session.rationale.session_number > number
        and session.scheduled_at > missed.scheduled_at
    ]
    dependants.sort(key=lambda item: (item.rationale.session_number, item.scheduled_at))
    return dependants


class MissedSessionRebalancer:
    """Finds the first free slot strictly after a missed session within a fixed horizon.

    Existing sessions count towards study clusters exactly as they do for weekly
    placement, so a moved session never extends a run past the cluster limit.
    """

    def __init__(
        self,
        *,
        calculator: Optional[AvailabilityCalculator] = None,
        horizon_days: int = DEFAULT_HORIZON_DAYS,
        granularity_minutes: int = SLOT_GRANULARITY_MINUTES,
    ) -> None:
        self._calculator = calculator or AvailabilityCalculator(granularity_minutes)
        self._horizon_days = horizon_days

    @property
    def horizon_days(self) -> int:
        return self._horizon_days

    def find_slot(
        self,
        missed: StudySession,
        other_sessions: Iterable[StudySession],
        blocked: Sequence[BlockedInterval],
        preferences: TimePreferences,
    ) -> Optional[datetime]:
        first_day = missed.scheduled_at.date()
        availability = self._calculator.days(preferences, first_day, self._horizon_days, blocked)
        occupied = [
            (session.scheduled_at, session.end_at)
            for session in other_sessions
            if session.id != missed.id and session.status in ("scheduled", "done")
        ]
        timeline = self._calculator.timeline(availability, sessions=occupied)
        duration = timedelta(minutes=missed.duration_minutes)
        for entry in availability:
            for start in timeline.candidate_starts(entry.day, duration, after=missed.scheduled_at):
                return start
        return None

    def rebalance(
        self,
        missed: StudySession,
        horizon_sessions: Iterable[StudySession],
        sequence_sessions: Iterable[StudySession],
        blocked: Sequence[BlockedInterval],
        preferences: TimePreferences,
    ) -> RebalanceResult:
        """Move ``missed`` forward and shift its later sequence sessions by the same delta.

        Shifted sessions keep their relative spacing and are not re-checked for
        collisions. When no slot exists the session stays missed.
        """
        new_start = self.find_slot(missed, horizon_sessions, blocked, preferences)
        if new_start is None:
            logger.info(
                "No free slot within %d day(s) for missed session %s; leaving it missed",
                self._horizon_days,
                missed.id,
            )
            outcome = RescheduleOutcome(
                session_id=missed.id,
                rescheduled=False,
                message=f"No free slot found within {self._horizon_days} days.",
            )
            self._emit(missed, outcome)
            return RebalanceResult(outcome=outcome)

        delta = new_start - missed.scheduled_at
        moved = missed.model_copy(update={"scheduled_at": new_start, "status": "scheduled"})
        shifted = [
            session.model_copy(update={"scheduled_at": session.scheduled_at + delta})
            for session in dependent_sessions(missed, sequence_sessions)
        ]
        outcome = RescheduleOutcome(
            session_id=missed.id,
            rescheduled=True,
            new_scheduled_at=new_start,
            delta_minutes=int(delta.total_seconds() // 60),
            shifted_session_ids=[session.id for session in shifted],
            message="Session rescheduled.",
        )
        self._emit(missed, outcome)
        return RebalanceResult(outcome=outcome, updates=[moved, *shifted])

    def _emit(self, missed: StudySession, outcome: RescheduleOutcome) -> None:
        emit_event(
            "session_rebalanced",
            session_id=missed.id,
            user_id=missed.user_id,
            topic_id=missed.topic_id,
            rescheduled=outcome.rescheduled,
            delta_minutes=outcome.delta_minutes,
            shifted=len(outcome.shifted_session_ids),
        )


__all__ = ["DEFAULT_HORIZON_DAYS", "MissedSessionRebalancer", "RebalanceResult", "dependent_sessions"]
