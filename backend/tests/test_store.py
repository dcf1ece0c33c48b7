"""Plan store behaviour, in memory and against SQLite."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from study_planner.db.base import Base
from study_planner.db.models import PersistenceAuditEventModel, StudySessionModel
from study_planner.db.session import make_session_factory, session_scope
from study_planner.errors import NotFoundError, PersistenceError, RegenerationTimeout
from study_planner.models import (
    BlockedInterval,
    RecurringCommitment,
    SessionRationale,
    StudySession,
    TimePreferences,
    UserPlanningContext,
)
from study_planner.repositories.study_plans import study_plans
from study_planner.store import DatabasePlanStore, InMemoryPlanStore

MONDAY = date(2024, 1, 15)


def _at(day: int, hour: int = 8, minute: int = 0) -> datetime:
    return datetime(2024, 1, day, hour, minute, tzinfo=timezone.utc)


def _context(user_id: str = "learner-1", **overrides) -> UserPlanningContext:
    payload = {
        "user_id": user_id,
        "ratings": {"algebra": 1, "stats": 4},
        "subjects": ["math"],
        "topic_subjects": {"algebra": "math"},
        "priority_topic_ids": ["stats"],
        "daily_hours": {"monday": 2},
        "time_preferences": TimePreferences(
            weekday_earliest="09:00",
            weekday_latest="18:00",
            weekend_earliest="10:00",
            weekend_latest="14:00",
            use_same_weekend_times=False,
        ),
        "blocked_times": [BlockedInterval(start=_at(16, 12), end=_at(16, 13), label="Dentist")],
        "recurring_commitments": [
            RecurringCommitment(start_time="17:00", end_time="18:00", days_of_week=[0, 2], label="Gym")
        ],
        "session_duration_minutes": 60,
    }
    payload.update(overrides)
    return UserPlanningContext(**payload)


def _session(session_id: str, scheduled_at: datetime, *, user_id: str = "learner-1") -> StudySession:
    return StudySession(
        id=session_id,
        user_id=user_id,
        topic_id="algebra",
        scheduled_at=scheduled_at,
        duration_minutes=30,
        rationale=SessionRationale(
            rating=1,
            session_number=1,
            session_total=3,
            label="Revision Block 1/3",
            explanation="Confidence rating 1. This is spaced repetition block 1 of 3 to reinforce learning.",
        ),
        week_start=MONDAY,
    )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield make_session_factory(engine)
    finally:
        engine.dispose()


@pytest.fixture(params=["memory", "database"])
def store(request, session_factory):
    if request.param == "memory":
        return InMemoryPlanStore()
    return DatabasePlanStore(session_factory)


def test_context_round_trips_through_store(store) -> None:
    store.upsert_user(_context())

    loaded = store.load_context("learner-1")

    assert loaded.ratings == {"algebra": 1, "stats": 4}
    assert loaded.topic_subjects == {"algebra": "math"}
    assert loaded.priority_topic_ids == ["stats"]
    assert loaded.daily_hours == {"monday": 2.0}
    assert loaded.time_preferences.uses_weekend_window()
    assert loaded.blocked_times[0].start == _at(16, 12)
    assert loaded.blocked_times[0].label == "Dentist"
    assert loaded.recurring_commitments[0].days_of_week == [0, 2]
    assert loaded.session_duration_minutes == 60


def test_upsert_replaces_ratings(store) -> None:
    store.upsert_user(_context())
    store.upsert_user(_context(ratings={"algebra": 3}))
    assert store.load_context("learner-1").ratings == {"algebra": 3}


def test_unknown_user_raises_not_found(store) -> None:
    with pytest.raises(NotFoundError):
        store.load_context("nobody")


def test_eligible_users_exclude_users_without_access(store) -> None:
    store.upsert_user(_context("b-user"))
    store.upsert_user(_context("a-user"))
    store.upsert_user(_context("c-user"), has_access=False)
    assert store.list_eligible_users() == ["a-user", "b-user"]


def test_replace_week_only_touches_that_week(store) -> None:
    store.upsert_user(_context())
    store.add_sessions(
        [
            _session("prev", _at(14, 20)),
            _session("old-mon", _at(15)),
            _session("old-sun", _at(21, 20)),
            _session("next", _at(22)),
        ]
    )

    store.replace_week("learner-1", MONDAY, [_session("new-tue", _at(16))])

    remaining = [item.id for item in store.list_sessions("learner-1")]
    assert remaining == ["prev", "new-tue", "next"]
    stored = store.get_session("new-tue")
    assert stored.rationale.label == "Revision Block 1/3"
    assert stored.scheduled_at == _at(16)


def test_list_sessions_filters_by_range_and_user(store) -> None:
    store.upsert_user(_context())
    store.upsert_user(_context("learner-2"))
    store.add_sessions(
        [
            _session("a", _at(15)),
            _session("b", _at(17)),
            _session("c", _at(17), user_id="learner-2"),
        ]
    )
    assert [item.id for item in store.list_sessions("learner-1", _at(16), _at(18))] == ["b"]


def test_update_sessions_persists_status_and_time(store) -> None:
    store.upsert_user(_context())
    store.add_sessions([_session("a", _at(15))])

    moved = store.get_session("a").model_copy(update={"status": "missed", "scheduled_at": _at(16, 9)})
    store.update_sessions([moved])

    stored = store.get_session("a")
    assert stored.status == "missed"
    assert stored.scheduled_at == _at(16, 9)


def test_update_of_unknown_session_raises_not_found(store) -> None:
    store.upsert_user(_context())
    with pytest.raises(NotFoundError):
        store.update_sessions([_session("missing", _at(15))])


def test_in_memory_store_returns_copies() -> None:
    store = InMemoryPlanStore()
    store.upsert_user(_context())
    store.add_sessions([_session("a", _at(15))])

    fetched = store.get_session("a")
    fetched.status = "done"

    assert store.get_session("a").status == "scheduled"


def test_database_store_records_audit_events(session_factory) -> None:
    store = DatabasePlanStore(session_factory)
    store.upsert_user(_context())
    store.replace_week("learner-1", MONDAY, [_session("a", _at(15))])

    with session_scope(commit=False, factory=session_factory) as session:
        kinds = session.execute(
            select(PersistenceAuditEventModel.event_type).order_by(PersistenceAuditEventModel.event_type)
        ).scalars().all()
        count = session.execute(select(func.count()).select_from(StudySessionModel)).scalar_one()

    assert kinds == ["user_upsert", "week_replaced"]
    assert count == 1


def test_database_store_skips_malformed_rationale(session_factory) -> None:
    store = DatabasePlanStore(session_factory)
    store.upsert_user(_context())
    store.add_sessions([_session("a", _at(15))])
    with session_scope(factory=session_factory) as session:
        session.get(StudySessionModel, "a").rationale = {"session_number": "first"}

    assert store.get_session("a").rationale is None


def test_database_errors_surface_as_persistence_errors(monkeypatch, session_factory) -> None:
    store = DatabasePlanStore(session_factory)

    def explode(session, user_id, start=None, end=None):
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    monkeypatch.setattr(study_plans, "list_sessions", explode)

    with pytest.raises(PersistenceError) as excinfo:
        store.list_sessions("learner-1")
    assert excinfo.value.retryable


def test_replace_week_rolls_back_when_the_commit_guard_fails(store) -> None:
    store.upsert_user(_context())
    store.add_sessions([_session("old-mon", _at(15))])

    def too_late() -> None:
        raise RegenerationTimeout("time budget spent")

    with pytest.raises(RegenerationTimeout):
        store.replace_week("learner-1", MONDAY, [_session("new-tue", _at(16))], before_commit=too_late)

    assert [item.id for item in store.list_sessions("learner-1")] == ["old-mon"]


def test_record_rerating_updates_session_rating_and_priority(store) -> None:
    store.upsert_user(_context())
    store.add_sessions([_session("a", _at(15))])
    finished = store.get_session("a").model_copy(
        update={"status": "done", "rerating_score": 3, "completed_at": _at(15, 9)}
    )

    store.record_rerating(finished, 3)
    store.record_rerating(finished, 2)

    stored = store.get_session("a")
    assert stored.status == "done"
    assert stored.rerating_score == 3
    assert stored.completed_at == _at(15, 9)
    context = store.load_context("learner-1")
    assert context.ratings == {"algebra": 2, "stats": 4}
    assert context.priority_topic_ids == ["stats", "algebra"]


def test_record_rerating_of_unknown_session_raises_not_found(store) -> None:
    store.upsert_user(_context())
    with pytest.raises(NotFoundError):
        store.record_rerating(_session("missing", _at(15)), 3)
