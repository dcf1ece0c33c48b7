"""Plan persistence: an in-memory store and a SQL store behind one protocol."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Callable, Dict, Generator, Iterable, List, Optional, Protocol, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings
from .db.session import session_scope
from .errors import NotFoundError, PersistenceError
from .models import StudySession, UserPlanningContext, day_start, ensure_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

if TYPE_CHECKING:
    from .repositories.study_plans import StudyPlanRepository


def _repo() -> "StudyPlanRepository":
    from .repositories.study_plans import study_plans as repository

    return repository


class PlanStore(Protocol):
    def list_eligible_users(self) -> List[str]:
        ...

    def load_context(self, user_id: str) -> UserPlanningContext:
        ...

    def list_sessions(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[StudySession]:
        ...

    def get_session(self, session_id: str) -> Optional[StudySession]:
        ...

    def replace_week(
        self,
        user_id: str,
        week_start: date,
        sessions: List[StudySession],
        *,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> List[StudySession]:
        ...

    def update_sessions(self, sessions: List[StudySession]) -> List[StudySession]:
        ...

    def record_rerating(self, session: StudySession, rating: int) -> StudySession:
        ...


class InMemoryPlanStore:
    """Process-local store guarded by a re-entrant lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._contexts: Dict[str, UserPlanningContext] = {}
        self._eligible: Dict[str, bool] = {}
        self._sessions: Dict[str, StudySession] = {}

    def upsert_user(self, context: UserPlanningContext, *, has_access: bool = True) -> UserPlanningContext:
        with self._lock:
            self._contexts[context.user_id] = context.model_copy(deep=True)
            self._eligible[context.user_id] = has_access
        return context.model_copy(deep=True)

    def add_sessions(self, sessions: Iterable[StudySession]) -> List[StudySession]:
        with self._lock:
            stored = [session.model_copy(deep=True) for session in sessions]
            for session in stored:
                self._sessions[session.id] = session
        return [session.model_copy(deep=True) for session in stored]

    def list_eligible_users(self) -> List[str]:
        with self._lock:
            return sorted(user_id for user_id, allowed in self._eligible.items() if allowed)

    def load_context(self, user_id: str) -> UserPlanningContext:
        with self._lock:
            context = self._contexts.get(user_id)
            if context is None:
                raise NotFoundError(f"Planner user '{user_id}' was not found.")
            return context.model_copy(deep=True)

    def list_sessions(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[StudySession]:
        lower = ensure_utc(start) if start is not None else None
        upper = ensure_utc(end) if end is not None else None
        with self._lock:
            matches = [
                session.model_copy(deep=True)
                for session in self._sessions.values()
                if session.user_id == user_id
                and (lower is None or session.scheduled_at >= lower)
                and (upper is None or session.scheduled_at < upper)
            ]
        matches.sort(key=lambda item: (item.scheduled_at, item.id))
        return matches

    def get_session(self, session_id: str) -> Optional[StudySession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def replace_week(
        self,
        user_id: str,
        week_start: date,
        sessions: List[StudySession],
        *,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> List[StudySession]:
        window_start = day_start(week_start)
        window_end = window_start + timedelta(days=7)
        with self._lock:
            if before_commit is not None:
                before_commit()
            stale = [
                session_id
                for session_id, session in self._sessions.items()
                if session.user_id == user_id and window_start <= session.scheduled_at < window_end
            ]
            for session_id in stale:
                del self._sessions[session_id]
            for session in sessions:
                self._sessions[session.id] = session.model_copy(deep=True)
        return [session.model_copy(deep=True) for session in sessions]

    def update_sessions(self, sessions: List[StudySession]) -> List[StudySession]:
        with self._lock:
            missing = [session.id for session in sessions if session.id not in self._sessions]
            if missing:
                raise NotFoundError(f"Study session '{missing[0]}' was not found.")
            for session in sessions:
                self._sessions[session.id] = session.model_copy(deep=True)
        return [session.model_copy(deep=True) for session in sessions]

    def record_rerating(self, session: StudySession, rating: int) -> StudySession:
        with self._lock:
            if session.id not in self._sessions:
                raise NotFoundError(f"Study session '{session.id}' was not found.")
            context = self._contexts.get(session.user_id)
            if context is None:
                raise NotFoundError(f"Planner user '{session.user_id}' was not found.")
            ratings = dict(context.ratings)
            ratings[session.topic_id] = rating
            priorities = list(context.priority_topic_ids)
            if session.topic_id not in priorities:
                priorities.append(session.topic_id)
            self._contexts[session.user_id] = context.model_copy(
                update={"ratings": ratings, "priority_topic_ids": priorities}
            )
            self._sessions[session.id] = session.model_copy(deep=True)
        return session.model_copy(deep=True)


class DatabasePlanStore:
    """SQL-backed store; every call runs in its own transaction."""

    def __init__(self, session_factory: Optional[sessionmaker[Session]] = None) -> None:
        self._factory = session_factory

    @contextmanager
    def _scope(self, *, commit: bool = True) -> Generator[Session, None, None]:
        with session_scope(commit=commit, factory=self._factory) as session:
            yield session

    def _run(self, operation: str, func: Callable[[Session], T], *, commit: bool = True) -> T:
        try:
            with self._scope(commit=commit) as session:
                return func(session)
        except SQLAlchemyError as exc:
            logger.warning("Plan store %s failed: %s", operation, exc)
            raise PersistenceError(f"Plan store {operation} failed: {exc}") from exc

    def upsert_user(self, context: UserPlanningContext, *, has_access: bool = True) -> UserPlanningContext:
        return self._run(
            "upsert_user",
            lambda session: _repo().upsert_user(session, context, has_access=has_access),
        )

    def add_sessions(self, sessions: Iterable[StudySession]) -> List[StudySession]:
        items = list(sessions)
        return self._run("add_sessions", lambda session: _repo().add_sessions(session, items))

    def list_eligible_users(self) -> List[str]:
        return self._run("list_eligible_users", _repo().list_eligible_user_ids, commit=False)

    def load_context(self, user_id: str) -> UserPlanningContext:
        context = self._run(
            "load_context", lambda session: _repo().load_context(session, user_id), commit=False
        )
        if context is None:
            raise NotFoundError(f"Planner user '{user_id}' was not found.")
        return context

    def list_sessions(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[StudySession]:
        return self._run(
            "list_sessions",
            lambda session: _repo().list_sessions(session, user_id, start, end),
            commit=False,
        )

    def get_session(self, session_id: str) -> Optional[StudySession]:
        return self._run(
            "get_session", lambda session: _repo().get_session(session, session_id), commit=False
        )

    def replace_week(
        self,
        user_id: str,
        week_start: date,
        sessions: List[StudySession],
        *,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> List[StudySession]:
        return self._run(
            "replace_week",
            lambda session: _repo().replace_week(
                session, user_id, week_start, sessions, before_commit=before_commit
            ),
        )

    def update_sessions(self, sessions: List[StudySession]) -> List[StudySession]:
        return self._run(
            "update_sessions", lambda session: _repo().update_sessions(session, sessions)
        )

    def record_rerating(self, session: StudySession, rating: int) -> StudySession:
        return self._run(
            "record_rerating",
            lambda db_session: _repo().record_rerating(db_session, session, rating),
        )


_store: Optional[PlanStore] = None
_store_lock = threading.Lock()


def get_plan_store() -> PlanStore:
    """Store selected by ``STUDY_PLANNER_PERSISTENCE_MODE``."""
    global _store
    with _store_lock:
        if _store is None:
            mode = get_settings().persistence_mode
            _store = InMemoryPlanStore() if mode == "memory" else DatabasePlanStore()
            logger.info("Using %s plan store", mode)
        return _store


def reset_plan_store() -> None:
    global _store
    with _store_lock:
        _store = None


__all__ = [
    "DatabasePlanStore",
    "InMemoryPlanStore",
    "PlanStore",
    "get_plan_store",
    "reset_plan_store",
]
