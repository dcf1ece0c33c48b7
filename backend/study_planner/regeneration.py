"""Weekly plan regeneration for every eligible user."""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from .cache import WeekPlanCache, week_cache
from .config import Settings, get_settings
from .errors import PersistenceError, PlanValidationError, RegenerationTimeout
from .locks import UserLockRegistry, user_locks
from .models import (
    GenerationRequest,
    RegenerationError,
    RegenerationOutcome,
    RegenerationSummary,
    SequenceState,
    StudySession,
    UserPlanningContext,
    WeeklyPlanResult,
    day_start,
    ensure_utc,
    week_start_for,
)
from .schedule_builder import WeeklyScheduleBuilder
from .sequence_state import reconstruct_sequence_states
from .store import PlanStore
from .telemetry import emit_event

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_week_start(now: datetime) -> date:
    """Monday of the week after the one containing ``now``."""
    return week_start_for(now) + timedelta(days=7)


def build_generation_request(
    context: UserPlanningContext,
    week_start: date,
    ongoing: Dict[str, SequenceState],
    *,
    now: Optional[datetime] = None,
    default_duration_minutes: int = 30,
) -> GenerationRequest:
    not_before = None
    if now is not None and ensure_utc(now) > day_start(week_start):
        not_before = ensure_utc(now)
    try:
        return GenerationRequest(
            subjects=context.subjects,
            topic_subjects=context.topic_subjects,
            ratings=context.ratings,
            daily_hours=context.daily_hours,
            time_preferences=context.time_preferences,
            blocked_times=context.blocked_times,
            recurring_commitments=context.recurring_commitments,
            session_duration_minutes=context.session_duration_minutes or default_duration_minutes,
            target_week_start=week_start,
            ongoing_topics=ongoing,
            priority_topic_ids=context.priority_topic_ids,
            topic_order=context.topic_order,
            not_before=not_before,
        )
    except ValidationError as exc:
        raise PlanValidationError(f"Invalid planning input for '{context.user_id}': {exc}") from exc


class WeeklyRegenerationOrchestrator:
    """Runs the builder for the upcoming week and replaces each user's persisted week.

    Users run concurrently on a bounded worker pool. A failure or timeout for
    one user is recorded in the summary and never stops the others.
    """

    def __init__(
        self,
        store: PlanStore,
        *,
        builder: Optional[WeeklyScheduleBuilder] = None,
        settings: Optional[Settings] = None,
        locks: Optional[UserLockRegistry] = None,
        cache: Optional[WeekPlanCache] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._builder = builder or WeeklyScheduleBuilder(buffer_fraction=self._settings.buffer_fraction)
        self._locks = locks or user_locks
        self._cache = cache or week_cache
        self._clock = clock

    @property
    def store(self) -> PlanStore:
        return self._store

    def plan_week(
        self,
        user_id: str,
        week_start: date,
        *,
        now: Optional[datetime] = None,
        deadline: Optional[float] = None,
    ) -> WeeklyPlanResult:
        """Build (but do not persist) the plan for one user and week."""
        context = self._store.load_context(user_id)
        self._check_deadline(user_id, deadline)
        week_begin = day_start(week_start)
        history = self._store.list_sessions(
            user_id,
            week_begin - timedelta(days=self._settings.history_lookback_days),
            week_begin,
        )
        ongoing = reconstruct_sequence_states(history, context.ratings, before=week_begin)
        request = build_generation_request(
            context,
            week_start,
            ongoing,
            now=now,
            default_duration_minutes=self._settings.session_duration_minutes,
        )
        result = self._builder.build(request)
        self._check_deadline(user_id, deadline)
        return result

    def persist_week(
        self,
        user_id: str,
        week_start: date,
        result: WeeklyPlanResult,
        *,
        deadline: Optional[float] = None,
    ) -> List[StudySession]:
        """Full replace of the user's week, retried on retryable persistence errors.

        The deadline is checked again inside the store transaction, so a user
        whose time ran out never commits a week after being reported failed.
        """
        sessions = [entry.to_session(user_id, week_start) for entry in result.persistable()]
        attempts = self._settings.persistence_retry_attempts + 1
        attempt = 0
        while True:
            attempt += 1
            self._check_deadline(user_id, deadline)
            try:
                stored = self._store.replace_week(
                    user_id,
                    week_start,
                    sessions,
                    before_commit=lambda: self._check_deadline(user_id, deadline),
                )
            except PersistenceError as exc:
                if attempt >= attempts or not exc.retryable:
                    raise
                logger.warning(
                    "Retrying week replace for %s (attempt %d/%d): %s",
                    user_id,
                    attempt,
                    attempts,
                    exc,
                )
                continue
            self._cache.invalidate(user_id)
            return stored

    def regenerate_user(
        self,
        user_id: str,
        week_start: date,
        *,
        now: Optional[datetime] = None,
        deadline: Optional[float] = None,
    ) -> RegenerationOutcome:
        with self._locks.hold(user_id):
            result = self.plan_week(user_id, week_start, now=now, deadline=deadline)
            if result.status == "nothing_to_schedule":
                return RegenerationOutcome(
                    user_id=user_id,
                    status="skipped",
                    week_start=week_start,
                    plan_status=result.status,
                    reason="No topics need revision sessions.",
                )
            if result.is_empty:
                # Keep whatever is already persisted for the week.
                return RegenerationOutcome(
                    user_id=user_id,
                    status="skipped",
                    week_start=week_start,
                    plan_status=result.status,
                    reason="No free time for any session; adjust availability or ratings.",
                )
            stored = self.persist_week(user_id, week_start, result, deadline=deadline)
            return RegenerationOutcome(
                user_id=user_id,
                status="success",
                week_start=week_start,
                sessions_written=len(stored),
                plan_status=result.status,
            )

    def run_cycle(self, now: Optional[datetime] = None) -> RegenerationSummary:
        started_at = ensure_utc(now) if now is not None else self._clock()
        week_start = next_week_start(started_at)
        started = time.perf_counter()
        user_ids = self._store.list_eligible_users()
        summary = RegenerationSummary(target_week_start=week_start, started_at=started_at)
        logger.info(
            "Weekly regeneration for %s starting with %d user(s)",
            week_start.isoformat(),
            len(user_ids),
        )

        outcomes = self._run_all(user_ids, week_start, started_at)
        for outcome in outcomes:
            summary.outcomes.append(outcome)
            if outcome.status == "success":
                summary.success_count += 1
            elif outcome.status == "skipped":
                summary.skipped_count += 1
            else:
                summary.failed_count += 1
                summary.errors.append(
                    RegenerationError(user_id=outcome.user_id, error=outcome.error or "unknown error")
                )
        summary.finished_at = self._clock()

        emit_event(
            "weekly_regeneration_cycle",
            week_start=week_start,
            users=len(user_ids),
            success=summary.success_count,
            failed=summary.failed_count,
            skipped=summary.skipped_count,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        logger.info(
            "Weekly regeneration for %s finished: %d succeeded, %d failed, %d skipped",
            week_start.isoformat(),
            summary.success_count,
            summary.failed_count,
            summary.skipped_count,
        )
        return summary

    def _run_all(
        self, user_ids: List[str], week_start: date, now: datetime
    ) -> List[RegenerationOutcome]:
        if not user_ids:
            return []
        workers = max(1, min(self._settings.regen_max_workers, len(user_ids)))
        timeout = self._settings.regen_user_timeout_seconds
        budget = timeout * (math.ceil(len(user_ids) / workers) + 1)
        cycle_deadline = time.monotonic() + budget

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="weekly-regen")
        try:
            futures = {
                executor.submit(self._run_user, user_id, week_start, now, cycle_deadline): user_id
                for user_id in user_ids
            }
            done, _pending = wait(futures, timeout=budget)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        by_user: Dict[str, RegenerationOutcome] = {}
        for future, user_id in futures.items():
            if future in done:
                by_user[user_id] = future.result()
                continue
            future.cancel()
            logger.error("Regeneration for %s did not finish within the cycle budget", user_id)
            by_user[user_id] = RegenerationOutcome(
                user_id=user_id,
                status="failed",
                week_start=week_start,
                error=f"Regeneration timed out after {timeout:g}s.",
            )
        return [by_user[user_id] for user_id in user_ids]

    def _run_user(
        self, user_id: str, week_start: date, now: datetime, cycle_deadline: float
    ) -> RegenerationOutcome:
        start = time.perf_counter()
        # Never later than the cycle budget, after which the user is reported failed.
        deadline = min(time.monotonic() + self._settings.regen_user_timeout_seconds, cycle_deadline)
        try:
            outcome = self.regenerate_user(user_id, week_start, now=now, deadline=deadline)
        except Exception as exc:  # noqa: BLE001
            duration_ms = (time.perf_counter() - start) * 1000.0
            emit_event(
                "weekly_regeneration_user",
                user_id=user_id,
                week_start=week_start,
                status="failed",
                duration_ms=round(duration_ms, 2),
                error=str(exc),
                exception_type=exc.__class__.__name__,
            )
            logger.exception("Weekly regeneration failed for %s", user_id)
            return RegenerationOutcome(
                user_id=user_id,
                status="failed",
                week_start=week_start,
                error=str(exc) or exc.__class__.__name__,
            )
        emit_event(
            "weekly_regeneration_user",
            user_id=user_id,
            week_start=week_start,
            status=outcome.status,
            duration_ms=round((time.perf_counter() - start) * 1000.0, 2),
            sessions=outcome.sessions_written,
            plan_status=outcome.plan_status,
        )
        return outcome

    def _check_deadline(self, user_id: str, deadline: Optional[float]) -> None:
        if deadline is not None and time.monotonic() > deadline:
            raise RegenerationTimeout(f"Regeneration for '{user_id}' exceeded its time budget.")


__all__ = [
    "WeeklyRegenerationOrchestrator",
    "build_generation_request",
    "next_week_start",
]
