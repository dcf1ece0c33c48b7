"""On-demand generation and session status changes through the plan service."""

from __future__ import annotations

import threading
from datetime import date, datetime, timezone
from typing import List

import pytest

from study_planner.cache import WeekPlanCache
from study_planner.config import Settings
from study_planner.errors import InfeasibleScheduleError, NotFoundError, PlanValidationError
from study_planner.locks import UserLockRegistry
from study_planner.models import (
    BlockedInterval,
    SessionRationale,
    StudySession,
    UserPlanningContext,
)
from study_planner.plan_service import MAINTENANCE_INTERVAL_DAYS, PlanService
from study_planner.store import InMemoryPlanStore
from study_planner.telemetry import TelemetryEvent, register_listener

MONDAY = date(2024, 1, 15)
SUNDAY_BEFORE = datetime(2024, 1, 14, 12, tzinfo=timezone.utc)


def _at(day: int, hour: int = 8, minute: int = 0) -> datetime:
    return datetime(2024, 1, day, hour, minute, tzinfo=timezone.utc)


def _service(store: InMemoryPlanStore, now: datetime = SUNDAY_BEFORE) -> PlanService:
    return PlanService(
        store,
        settings=Settings(persistence_mode="memory"),
        locks=UserLockRegistry(),
        cache=WeekPlanCache(),
        clock=lambda: now,
    )


def _store(**context) -> InMemoryPlanStore:
    store = InMemoryPlanStore()
    payload = {"user_id": "learner-1", "ratings": {"algebra": 1}}
    payload.update(context)
    store.upsert_user(UserPlanningContext(**payload))
    return store


def _session(session_id: str, scheduled_at: datetime, *, number: int = 1, total: int = 3) -> StudySession:
    return StudySession(
        id=session_id,
        user_id="learner-1",
        topic_id="algebra",
        scheduled_at=scheduled_at,
        rationale=SessionRationale(
            rating=1,
            session_number=number,
            session_total=total,
            label=f"Revision Block {number}/{total}",
            explanation="Confidence rating 1.",
        ),
    )


def test_generate_week_persists_and_reads_back() -> None:
    store = _store()
    service = _service(store)

    result = service.generate_week("learner-1", MONDAY)

    assert result.status == "complete"
    stored = service.week_sessions("learner-1", MONDAY)
    assert [item.scheduled_at for item in stored] == [_at(15), _at(17), _at(20)]
    assert all(item.status == "scheduled" and item.week_start == MONDAY for item in stored)


def test_generate_week_defaults_to_current_week_and_skips_past_time() -> None:
    store = _store(ratings={"stats": 3})
    service = _service(store, now=_at(17, 12, 10))

    result = service.generate_week("learner-1")

    assert result.week_start == MONDAY
    assert [item.scheduled_at for item in result.sessions] == [_at(17, 12, 30)]


def test_generate_week_rejects_bad_weeks() -> None:
    service = _service(_store(), now=_at(22, 12))
    with pytest.raises(PlanValidationError):
        service.generate_week("learner-1", date(2024, 1, 16))
    with pytest.raises(PlanValidationError):
        service.generate_week("learner-1", MONDAY)


def test_generate_week_for_unknown_user_raises_not_found() -> None:
    with pytest.raises(NotFoundError):
        _service(InMemoryPlanStore()).generate_week("ghost", MONDAY)


def test_generate_week_without_free_time_is_infeasible() -> None:
    store = _store(blocked_times=[BlockedInterval(start=_at(15, 0), end=_at(22, 0))])
    store.add_sessions([_session("kept", _at(16))])
    events: List[TelemetryEvent] = []
    register_listener(events.append)

    with pytest.raises(InfeasibleScheduleError) as excinfo:
        _service(store).generate_week("learner-1", MONDAY)

    assert excinfo.value.deferred_topics == ["algebra"]
    assert [item.id for item in store.list_sessions("learner-1")] == ["kept"]
    request_event = next(event for event in events if event.name == "plan_generation_request")
    assert request_event.payload["status"] == "error"
    assert request_event.payload["exception_type"] == "InfeasibleScheduleError"


def test_generate_week_with_nothing_to_schedule_keeps_existing_sessions() -> None:
    store = _store(ratings={"algebra": -2})
    store.add_sessions([_session("kept", _at(16))])

    result = _service(store).generate_week("learner-1", MONDAY)

    assert result.status == "nothing_to_schedule"
    assert result.excluded_topics == ["algebra"]
    assert [item.id for item in store.list_sessions("learner-1")] == ["kept"]


def test_mark_missed_moves_session_past_occupied_time() -> None:
    store = _store(blocked_times=[BlockedInterval(start=_at(16, 8), end=_at(18, 14))])
    store.add_sessions([_session("tue", _at(16, 10), number=1, total=1)])

    outcome = _service(store).mark_missed("tue")

    assert outcome.rescheduled
    assert outcome.new_scheduled_at == _at(18, 14)
    stored = store.get_session("tue")
    assert stored.status == "scheduled"
    assert stored.scheduled_at == _at(18, 14)


def test_mark_missed_shifts_later_sessions_of_the_sequence() -> None:
    store = _store()
    store.add_sessions(
        [
            _session("s-1", _at(15), number=1),
            _session("s-2", _at(17), number=2),
            _session("s-3", _at(20), number=3),
        ]
    )

    outcome = _service(store).mark_missed("s-1")

    assert outcome.delta_minutes == 30
    assert outcome.shifted_session_ids == ["s-2", "s-3"]
    assert [item.scheduled_at for item in store.list_sessions("learner-1")] == [
        _at(15, 8, 30),
        _at(17, 8, 30),
        _at(20, 8, 30),
    ]


def test_mark_missed_without_free_slot_leaves_session_missed() -> None:
    store = _store(blocked_times=[BlockedInterval(start=_at(15, 0), end=datetime(2024, 2, 15, tzinfo=timezone.utc))])
    store.add_sessions([_session("s-1", _at(15, 9))])

    outcome = _service(store).mark_missed("s-1")

    assert not outcome.rescheduled
    assert store.get_session("s-1").status == "missed"
    with pytest.raises(PlanValidationError):
        _service(store).mark_missed("s-1")


def test_done_and_undo_transitions() -> None:
    store = _store()
    store.add_sessions([_session("s-1", _at(15))])
    service = _service(store)

    assert service.mark_done("s-1").status == "done"
    with pytest.raises(PlanValidationError):
        service.mark_done("s-1")
    assert service.mark_scheduled("s-1").status == "scheduled"
    with pytest.raises(PlanValidationError):
        service.mark_scheduled("s-1")
    with pytest.raises(NotFoundError):
        service.mark_done("missing")


def test_week_sessions_cache_is_invalidated_by_status_changes() -> None:
    store = _store()
    store.add_sessions([_session("s-1", _at(15))])
    service = _service(store)

    assert service.week_sessions("learner-1", MONDAY)[0].status == "scheduled"
    service.mark_done("s-1")

    assert service.week_sessions("learner-1", MONDAY)[0].status == "done"
    with pytest.raises(PlanValidationError):
        service.week_sessions("learner-1", date(2024, 1, 17))
    with pytest.raises(NotFoundError):
        service.week_sessions("ghost", MONDAY)


class InterleavingStore(InMemoryPlanStore):
    """Runs ``on_read`` once, right after a session listing has been read."""

    def __init__(self) -> None:
        super().__init__()
        self.on_read = None

    def list_sessions(self, user_id, start=None, end=None):
        rows = super().list_sessions(user_id, start, end)
        hook, self.on_read = self.on_read, None
        if hook is not None:
            hook()
        return rows


class GatedStore(InMemoryPlanStore):
    """Holds the first week replace open until ``release`` is set and logs every write."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()
        self.log: List[str] = []
        self._calls = 0
        self._calls_lock = threading.Lock()

    def replace_week(self, user_id, week_start, sessions, *, before_commit=None):
        with self._calls_lock:
            self._calls += 1
            call = self._calls
        self.log.append(f"enter-{call}")
        if call == 1:
            self.entered.set()
            self.release.wait(5)
        stored = super().replace_week(user_id, week_start, sessions, before_commit=before_commit)
        self.log.append(f"exit-{call}")
        return stored


def test_write_during_a_cache_fill_is_not_hidden_by_the_cache() -> None:
    store = InterleavingStore()
    store.upsert_user(UserPlanningContext(user_id="learner-1", ratings={"algebra": 1}))
    store.add_sessions([_session("s-1", _at(15))])
    service = _service(store)
    writer = threading.Thread(target=service.mark_done, args=("s-1",))

    def write_while_reading() -> None:
        writer.start()
        writer.join(timeout=0.2)

    store.on_read = write_while_reading

    first = service.week_sessions("learner-1", MONDAY)
    writer.join(timeout=5)

    assert first[0].status == "scheduled"
    assert store.get_session("s-1").status == "done"
    assert service.week_sessions("learner-1", MONDAY)[0].status == "done"


def test_regeneration_and_generation_for_one_user_do_not_interleave() -> None:
    store = GatedStore()
    store.upsert_user(UserPlanningContext(user_id="learner-1", ratings={"stats": 3}))
    service = _service(store)
    regen = threading.Thread(target=service.orchestrator.regenerate_user, args=("learner-1", MONDAY))
    generate = threading.Thread(target=service.generate_week, args=("learner-1", MONDAY))

    regen.start()
    assert store.entered.wait(5)
    generate.start()
    generate.join(timeout=0.3)

    assert generate.is_alive()
    assert store.log == ["enter-1"]

    store.release.set()
    regen.join(timeout=5)
    generate.join(timeout=5)

    assert store.log == ["enter-1", "exit-1", "enter-2", "exit-2"]
    assert len(store.list_sessions("learner-1")) == 1


def test_rerate_finishes_session_and_updates_topic() -> None:
    store = _store(ratings={"algebra": 1, "stats": 3})
    store.add_sessions([_session("s-1", _at(15))])
    events: List[TelemetryEvent] = []
    register_listener(events.append)

    outcome = _service(store).rerate("s-1", 2)

    assert outcome.next_action == "reinforcement"
    assert outcome.sessions_needed == 2
    assert outcome.previous_rating == 1
    assert outcome.session.status == "done"
    assert outcome.session.completed_at == SUNDAY_BEFORE
    assert outcome.session.rerating_score == 2
    context = store.load_context("learner-1")
    assert context.ratings == {"algebra": 2, "stats": 3}
    assert context.priority_topic_ids == ["algebra"]
    event = next(item for item in events if item.name == "topic_rerated")
    assert event.payload["rating"] == 2
    assert event.payload["next_action"] == "reinforcement"


def test_rerate_maintenance_interval_grows_with_each_mastery() -> None:
    store = _store()
    store.add_sessions([_session("s-1", _at(15)), _session("s-2", _at(17), number=2)])
    service = _service(store)

    first = service.rerate("s-1", 5)
    second = service.rerate("s-2", 4)

    assert first.next_action == "maintenance"
    assert first.days_until_review == MAINTENANCE_INTERVAL_DAYS[0]
    assert second.days_until_review == MAINTENANCE_INTERVAL_DAYS[1]


def test_rerate_rejects_bad_scores_and_missed_sessions() -> None:
    store = _store()
    store.add_sessions([_session("s-1", _at(15)).model_copy(update={"status": "missed"})])
    service = _service(store)

    for score in (0, 6, -2):
        with pytest.raises(PlanValidationError):
            service.rerate("s-1", score)
    with pytest.raises(PlanValidationError):
        service.rerate("s-1", 3)
    with pytest.raises(NotFoundError):
        service.rerate("missing", 3)


def test_rerated_topic_goes_first_and_restarts_its_sequence() -> None:
    store = _store(ratings={"algebra": 3, "zoology": 3})
    store.add_sessions(
        [
            StudySession(
                id="zoo-1",
                user_id="learner-1",
                topic_id="zoology",
                scheduled_at=_at(10),
                rationale=SessionRationale(
                    rating=1,
                    session_number=1,
                    session_total=3,
                    label="Revision Block 1/3",
                    explanation="Confidence rating 1.",
                ),
            )
        ]
    )
    service = _service(store)

    service.rerate("zoo-1", 3)
    result = service.generate_week("learner-1", MONDAY)

    assert [entry.topic_id for entry in result.sessions] == ["zoology", "algebra"]
    assert result.sessions[0].rationale.label == "Revision Block 1/1"
