"""Database-backed repository for planner users and their study sessions."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..db.models import (
    BlockedTimeModel,
    PersistenceAuditEventModel,
    PlannerUserModel,
    RecurringCommitmentModel,
    StudySessionModel,
    TopicRatingModel,
)
from ..errors import NotFoundError
from ..models import (
    BlockedInterval,
    RecurringCommitment,
    StudySession,
    TimePreferences,
    UserPlanningContext,
    day_start,
    ensure_utc,
)
from ..sequence_state import parse_rationale


def _normalize_user_id(user_id: str) -> str:
    normalized = user_id.strip()
    if not normalized:
        raise ValueError("User id cannot be empty.")
    return normalized


class StudyPlanRepository:
    """Persistence helper behind the database plan store. Callers own the transaction."""

    def upsert_user(
        self,
        session: Session,
        context: UserPlanningContext,
        *,
        has_access: bool = True,
        display_name: str = "",
    ) -> UserPlanningContext:
        user_id = _normalize_user_id(context.user_id)
        model = session.get(PlannerUserModel, user_id)
        if model is None:
            model = PlannerUserModel(id=user_id)
            session.add(model)

        prefs = context.time_preferences
        model.display_name = display_name or model.display_name or ""
        model.has_access = has_access
        model.weekday_earliest = prefs.weekday_earliest
        model.weekday_latest = prefs.weekday_latest
        model.weekend_earliest = prefs.weekend_earliest
        model.weekend_latest = prefs.weekend_latest
        model.use_same_weekend_times = prefs.use_same_weekend_times
        model.daily_hours = dict(context.daily_hours)
        model.session_duration_minutes = context.session_duration_minutes
        model.subjects = list(context.subjects)
        model.topic_order = list(context.topic_order)
        model.priority_topic_ids = list(context.priority_topic_ids)

        # Orphans must be deleted before re-inserting rows under the (user, topic) unique key.
        model.ratings.clear()
        model.blocked_times.clear()
        model.recurring_commitments.clear()
        session.flush()

        model.ratings = [
            TopicRatingModel(
                topic_id=topic_id,
                rating=rating,
                subject=context.topic_subjects.get(topic_id),
            )
            for topic_id, rating in context.ratings.items()
        ]
        model.blocked_times = [
            BlockedTimeModel(
                start_at=interval.start,
                end_at=interval.end,
                label=interval.label,
                event_id=interval.event_id,
            )
            for interval in context.blocked_times
            if interval.source == "explicit"
        ]
        model.recurring_commitments = [
            RecurringCommitmentModel(
                start_time=commitment.start_time,
                end_time=commitment.end_time,
                days_of_week=list(commitment.days_of_week),
                start_date=commitment.start_date,
                end_date=commitment.end_date,
                label=commitment.label,
                event_id=commitment.event_id,
            )
            for commitment in context.recurring_commitments
        ]
        session.flush()
        self._record_audit(session, user_id, "user_upsert", {"topics": len(context.ratings)})
        return self._context_from_model(model)

    def list_eligible_user_ids(self, session: Session) -> List[str]:
        stmt = (
            select(PlannerUserModel.id)
            .where(PlannerUserModel.has_access.is_(True))
            .order_by(PlannerUserModel.id.asc())
        )
        return list(session.execute(stmt).scalars().all())

    def load_context(self, session: Session, user_id: str) -> Optional[UserPlanningContext]:
        model = session.get(PlannerUserModel, _normalize_user_id(user_id))
        if model is None:
            return None
        return self._context_from_model(model)

    def list_sessions(
        self,
        session: Session,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[StudySession]:
        stmt = select(StudySessionModel).where(StudySessionModel.user_id == user_id)
        if start is not None:
            stmt = stmt.where(StudySessionModel.scheduled_at >= ensure_utc(start))
        if end is not None:
            stmt = stmt.where(StudySessionModel.scheduled_at < ensure_utc(end))
        stmt = stmt.order_by(StudySessionModel.scheduled_at.asc(), StudySessionModel.id.asc())
        return [self._session_to_domain(row) for row in session.execute(stmt).scalars().all()]

    def get_session(self, session: Session, session_id: str) -> Optional[StudySession]:
        row = session.get(StudySessionModel, session_id)
        return self._session_to_domain(row) if row is not None else None

    def replace_week(
        self,
        session: Session,
        user_id: str,
        week_start: date,
        sessions: Iterable[StudySession],
        *,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> List[StudySession]:
        window_start = day_start(week_start)
        window_end = window_start + timedelta(days=7)
        result = session.execute(
            delete(StudySessionModel)
            .where(StudySessionModel.user_id == user_id)
            .where(StudySessionModel.scheduled_at >= window_start)
            .where(StudySessionModel.scheduled_at < window_end)
        )
        new_rows = [self._session_to_model(item) for item in sessions]
        session.add_all(new_rows)
        session.flush()
        self._record_audit(
            session,
            user_id,
            "week_replaced",
            {
                "week_start": week_start.isoformat(),
                "deleted": result.rowcount or 0,
                "inserted": len(new_rows),
            },
        )
        session.flush()
        if before_commit is not None:
            before_commit()
        return [self._session_to_domain(row) for row in new_rows]

    def update_sessions(self, session: Session, sessions: Iterable[StudySession]) -> List[StudySession]:
        updated: List[StudySession] = []
        for item in sessions:
            row = session.get(StudySessionModel, item.id)
            if row is None:
                raise NotFoundError(f"Study session '{item.id}' was not found.")
            row.scheduled_at = item.scheduled_at
            row.duration_minutes = item.duration_minutes
            row.status = item.status
            row.rationale = item.rationale.model_dump(mode="json") if item.rationale else None
            row.rerating_score = item.rerating_score
            row.completed_at = item.completed_at
            updated.append(item)
        session.flush()
        if updated:
            self._record_audit(
                session,
                updated[0].user_id,
                "sessions_updated",
                {"session_ids": [item.id for item in updated]},
            )
        return updated

    def record_rerating(self, session: Session, item: StudySession, rating: int) -> StudySession:
        """Store a finished session, the topic's new rating and its priority flag together."""
        row = session.get(StudySessionModel, item.id)
        if row is None:
            raise NotFoundError(f"Study session '{item.id}' was not found.")
        user = session.get(PlannerUserModel, item.user_id)
        if user is None:
            raise NotFoundError(f"Planner user '{item.user_id}' was not found.")

        row.status = item.status
        row.rerating_score = item.rerating_score
        row.completed_at = item.completed_at

        existing = next((entry for entry in user.ratings if entry.topic_id == item.topic_id), None)
        previous = existing.rating if existing is not None else None
        if existing is None:
            user.ratings.append(TopicRatingModel(topic_id=item.topic_id, rating=rating))
        else:
            existing.rating = rating
        priorities = list(user.priority_topic_ids or [])
        if item.topic_id not in priorities:
            priorities.append(item.topic_id)
        user.priority_topic_ids = priorities
        session.flush()
        self._record_audit(
            session,
            item.user_id,
            "topic_rerated",
            {
                "session_id": item.id,
                "topic_id": item.topic_id,
                "previous_rating": previous,
                "rating": rating,
            },
        )
        return item

    def add_sessions(self, session: Session, sessions: Iterable[StudySession]) -> List[StudySession]:
        rows = [self._session_to_model(item) for item in sessions]
        session.add_all(rows)
        session.flush()
        return [self._session_to_domain(row) for row in rows]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _context_from_model(self, model: PlannerUserModel) -> UserPlanningContext:
        defaults = TimePreferences()
        return UserPlanningContext(
            user_id=model.id,
            ratings=[(row.topic_id, row.rating) for row in model.ratings],
            subjects=list(model.subjects or []),
            topic_subjects={row.topic_id: row.subject for row in model.ratings if row.subject},
            topic_order=list(model.topic_order or []),
            priority_topic_ids=list(model.priority_topic_ids or []),
            daily_hours=dict(model.daily_hours or {}),
            time_preferences=TimePreferences(
                weekday_earliest=model.weekday_earliest or defaults.weekday_earliest,
                weekday_latest=model.weekday_latest or defaults.weekday_latest,
                weekend_earliest=model.weekend_earliest,
                weekend_latest=model.weekend_latest,
                use_same_weekend_times=model.use_same_weekend_times,
            ),
            blocked_times=[
                BlockedInterval(
                    start=ensure_utc(row.start_at),
                    end=ensure_utc(row.end_at),
                    source="explicit",
                    label=row.label,
                    event_id=row.event_id,
                )
                for row in model.blocked_times
            ],
            recurring_commitments=[
                RecurringCommitment(
                    start_time=row.start_time,
                    end_time=row.end_time,
                    days_of_week=list(row.days_of_week or []),
                    start_date=row.start_date,
                    end_date=row.end_date,
                    label=row.label,
                    event_id=row.event_id,
                )
                for row in model.recurring_commitments
            ],
            session_duration_minutes=model.session_duration_minutes,
        )

    def _session_to_domain(self, row: StudySessionModel) -> StudySession:
        return StudySession(
            id=row.id,
            user_id=row.user_id,
            topic_id=row.topic_id,
            scheduled_at=ensure_utc(row.scheduled_at),
            duration_minutes=row.duration_minutes,
            status=row.status,
            rationale=parse_rationale(row.rationale, session_id=row.id),
            week_start=row.week_start,
            rerating_score=row.rerating_score,
            completed_at=ensure_utc(row.completed_at) if row.completed_at else None,
        )

    def _session_to_model(self, item: StudySession) -> StudySessionModel:
        return StudySessionModel(
            id=item.id,
            user_id=item.user_id,
            topic_id=item.topic_id,
            scheduled_at=item.scheduled_at,
            duration_minutes=item.duration_minutes,
            status=item.status,
            rationale=item.rationale.model_dump(mode="json") if item.rationale else None,
            week_start=item.week_start,
            rerating_score=item.rerating_score,
            completed_at=item.completed_at,
        )

    def _record_audit(self, session: Session, user_id: Optional[str], event_type: str, payload: Dict[str, Any]) -> None:
        session.add(
            PersistenceAuditEventModel(
                user_id=user_id,
                event_type=event_type,
                payload=payload,
                actor="system",
            )
        )


study_plans = StudyPlanRepository()

__all__ = ["StudyPlanRepository", "study_plans"]
