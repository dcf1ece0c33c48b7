"""Session lifecycle operations: on-demand generation, status changes, re-rating and missed-session recovery."""

from __future__ import annotations

import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional

from .availability import collect_blocked_intervals
from .cache import WeekPlanCache, week_cache
from .config import Settings, get_settings
from .errors import InfeasibleScheduleError, NotFoundError, PlanValidationError
from .locks import UserLockRegistry, user_locks
from .models import (
    RERATING_SCORES,
    RerateOutcome,
    RescheduleOutcome,
    StudySession,
    WeeklyPlanResult,
    day_start,
    ensure_utc,
    week_start_for,
)
from .rebalancer import MissedSessionRebalancer
from .regeneration import WeeklyRegenerationOrchestrator
from .store import PlanStore
from .telemetry import emit_event
from .topic_planner import planner

logger = logging.getLogger(__name__)

MAINTENANCE_INTERVAL_DAYS = (7, 14, 30, 60, 90)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlanService:
    def __init__(
        self,
        store: PlanStore,
        *,
        settings: Optional[Settings] = None,
        orchestrator: Optional[WeeklyRegenerationOrchestrator] = None,
        rebalancer: Optional[MissedSessionRebalancer] = None,
        locks: Optional[UserLockRegistry] = None,
        cache: Optional[WeekPlanCache] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._locks = locks or user_locks
        self._cache = cache or week_cache
        self._clock = clock
        self._orchestrator = orchestrator or WeeklyRegenerationOrchestrator(
            store,
            settings=self._settings,
            locks=self._locks,
            cache=self._cache,
            clock=clock,
        )
        self._rebalancer = rebalancer or MissedSessionRebalancer(
            horizon_days=self._settings.rebalance_horizon_days
        )

    @property
    def orchestrator(self) -> WeeklyRegenerationOrchestrator:
        return self._orchestrator

    def generate_week(
        self,
        user_id: str,
        week_start: Optional[date] = None,
        *,
        now: Optional[datetime] = None,
    ) -> WeeklyPlanResult:
        """Generate and persist one user's week; defaults to the current week from ``now``."""
        now = ensure_utc(now) if now is not None else self._clock()
        target = week_start or week_start_for(now)
        if target.weekday() != 0:
            raise PlanValidationError(f"Week start {target.isoformat()} is not a Monday.")
        if day_start(target) + timedelta(days=7) <= now:
            raise PlanValidationError(f"Week starting {target.isoformat()} is already over.")

        start = time.perf_counter()
        with self._locks.hold(user_id):
            try:
                result = self._orchestrator.plan_week(user_id, target, now=now)
                if result.status == "insufficient_capacity":
                    raise InfeasibleScheduleError(
                        "No free time for any study session this week; adjust your availability or ratings.",
                        deferred_topics=sorted(result.deferred_topics),
                    )
                if result.status != "nothing_to_schedule":
                    self._orchestrator.persist_week(user_id, target, result)
            except Exception as exc:  # noqa: BLE001
                emit_event(
                    "plan_generation_request",
                    user_id=user_id,
                    week_start=target,
                    status="error",
                    duration_ms=round((time.perf_counter() - start) * 1000.0, 2),
                    error=str(exc),
                    exception_type=exc.__class__.__name__,
                )
                if isinstance(exc, (InfeasibleScheduleError, NotFoundError, PlanValidationError)):
                    logger.info("Plan generation for %s rejected: %s", user_id, exc)
                else:
                    logger.exception("Failed to generate plan for %s", user_id)
                raise
        emit_event(
            "plan_generation_request",
            user_id=user_id,
            week_start=target,
            status=result.status,
            duration_ms=round((time.perf_counter() - start) * 1000.0, 2),
            sessions=len(result.sessions),
        )
        return result

    def week_sessions(self, user_id: str, week_start: date) -> List[StudySession]:
        if week_start.weekday() != 0:
            raise PlanValidationError(f"Week start {week_start.isoformat()} is not a Monday.")
        cached = self._cache.get(user_id, week_start)
        if cached is not None:
            return cached
        # Writers invalidate under the same lock, so a filled entry is never older than the store.
        with self._locks.hold(user_id):
            cached = self._cache.get(user_id, week_start)
            if cached is not None:
                return cached
            self._store.load_context(user_id)
            begin = day_start(week_start)
            sessions = self._store.list_sessions(user_id, begin, begin + timedelta(days=7))
            self._cache.set(user_id, week_start, sessions)
        return sessions

    def mark_missed(self, session_id: str) -> RescheduleOutcome:
        """Mark a session missed, then try to move it to the next free slot."""
        session = self._require_session(session_id)
        with self._locks.hold(session.user_id):
            session = self._require_session(session_id)
            if session.status != "scheduled":
                raise PlanValidationError(
                    f"Study session '{session_id}' is already {session.status} and cannot be marked missed."
                )
            missed = session.model_copy(update={"status": "missed"})
            self._store.update_sessions([missed])
            self._cache.invalidate(session.user_id)

            context = self._store.load_context(session.user_id)
            first_day = missed.scheduled_at.date()
            horizon = self._rebalancer.horizon_days
            horizon_start = day_start(first_day)
            horizon_end = horizon_start + timedelta(days=horizon)
            horizon_sessions = self._store.list_sessions(session.user_id, horizon_start, horizon_end)
            sequence_sessions = [
                item
                for item in self._store.list_sessions(session.user_id, missed.scheduled_at)
                if item.topic_id == missed.topic_id
            ]
            blocked = collect_blocked_intervals(
                context.blocked_times, context.recurring_commitments, first_day, horizon
            )
            result = self._rebalancer.rebalance(
                missed,
                horizon_sessions,
                sequence_sessions,
                blocked,
                context.time_preferences,
            )
            if result.updates:
                self._store.update_sessions(result.updates)
                self._cache.invalidate(session.user_id)
            return result.outcome

    def mark_done(self, session_id: str) -> StudySession:
        return self._transition(session_id, allowed_from=("scheduled",), target="done")

    def mark_scheduled(self, session_id: str) -> StudySession:
        """Undo a completion. Missed sessions only return to scheduled through rebalancing."""
        return self._transition(session_id, allowed_from=("done",), target="scheduled")

    def rerate(self, session_id: str, rating: int) -> RerateOutcome:
        """Finish a session with a fresh confidence rating for its topic.

        The session is marked done, the topic takes the new rating and joins the
        priority topics, all in one store write. The next generated week starts
        a new sequence for it.
        """
        if rating not in RERATING_SCORES:
            raise PlanValidationError(f"Re-rating must be between 1 and 5, got {rating!r}.")
        session = self._require_session(session_id)
        with self._locks.hold(session.user_id):
            session = self._require_session(session_id)
            if not session.topic_id:
                raise PlanValidationError(f"Study session '{session_id}' has no topic to re-rate.")
            if session.status == "missed":
                raise PlanValidationError(
                    f"Study session '{session_id}' was missed; reschedule it before re-rating."
                )
            context = self._store.load_context(session.user_id)
            previous = context.ratings.get(session.topic_id)
            mastered_before = 0
            if rating >= 4:
                mastered_before = sum(
                    1
                    for item in self._store.list_sessions(session.user_id)
                    if item.topic_id == session.topic_id
                    and item.id != session.id
                    and (item.rerating_score or 0) >= 4
                )
            finished = session.model_copy(
                update={"status": "done", "completed_at": self._clock(), "rerating_score": rating}
            )
            stored = self._store.record_rerating(finished, rating)
            self._cache.invalidate(session.user_id)

        outcome = self._rerate_outcome(stored, previous, rating, mastered_before)
        emit_event(
            "topic_rerated",
            user_id=stored.user_id,
            session_id=stored.id,
            topic_id=stored.topic_id,
            previous_rating=previous,
            rating=rating,
            next_action=outcome.next_action,
        )
        logger.info(
            "Topic %s re-rated %s -> %d by %s", stored.topic_id, previous, rating, stored.user_id
        )
        return outcome

    @staticmethod
    def _rerate_outcome(
        session: StudySession, previous: Optional[int], rating: int, mastered_before: int
    ) -> RerateOutcome:
        if rating <= 3:
            needed = planner.sessions_required(rating)
            plural = "s" if needed > 1 else ""
            return RerateOutcome(
                session=session,
                topic_id=session.topic_id or "",
                previous_rating=previous,
                rating=rating,
                next_action="reinforcement",
                sessions_needed=needed,
                message=(
                    f"Your confidence has been updated. {needed} more session{plural} "
                    "will be scheduled in your next plan."
                ),
            )
        days = MAINTENANCE_INTERVAL_DAYS[min(mastered_before, len(MAINTENANCE_INTERVAL_DAYS) - 1)]
        return RerateOutcome(
            session=session,
            topic_id=session.topic_id or "",
            previous_rating=previous,
            rating=rating,
            next_action="maintenance",
            days_until_review=days,
            message=f"Great job! This topic is due for a maintenance review in {days} days.",
        )

    def _transition(self, session_id: str, *, allowed_from: tuple, target: str) -> StudySession:
        session = self._require_session(session_id)
        with self._locks.hold(session.user_id):
            session = self._require_session(session_id)
            if session.status not in allowed_from:
                raise PlanValidationError(
                    f"Study session '{session_id}' is {session.status}; cannot change it to {target}."
                )
            changes: dict = {"status": target}
            if target == "done":
                changes["completed_at"] = self._clock()
            else:
                changes.update(completed_at=None, rerating_score=None)
            updated = session.model_copy(update=changes)
            stored = self._store.update_sessions([updated])[0]
            self._cache.invalidate(session.user_id)
            logger.info("Study session %s marked %s", session_id, target)
            return stored

    def _require_session(self, session_id: str) -> StudySession:
        session = self._store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Study session '{session_id}' was not found.")
        return session


__all__ = ["MAINTENANCE_INTERVAL_DAYS", "PlanService"]
