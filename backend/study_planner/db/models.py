"""ORM models backing the study planner persistence layer."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin

JSONType = JSON


class PlannerUserModel(TimestampMixin, Base):
    __tablename__ = "planner_users"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    display_name: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    has_access: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    weekday_earliest: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    weekday_latest: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    weekend_earliest: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    weekend_latest: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    use_same_weekend_times: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    daily_hours: Mapped[dict[str, float]] = mapped_column(JSONType, default=dict, nullable=False)
    session_duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    subjects: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    topic_order: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    priority_topic_ids: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)

    ratings: Mapped[list["TopicRatingModel"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", order_by="TopicRatingModel.id"
    )
    blocked_times: Mapped[list["BlockedTimeModel"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", order_by="BlockedTimeModel.start_at"
    )
    recurring_commitments: Mapped[list["RecurringCommitmentModel"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", order_by="RecurringCommitmentModel.id"
    )
    sessions: Mapped[list["StudySessionModel"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )


class TopicRatingModel(TimestampMixin, Base):
    __tablename__ = "topic_ratings"
    __table_args__ = (UniqueConstraint("user_id", "topic_id", name="uq_topic_ratings_user_topic"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("planner_users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    topic_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)

    user: Mapped[PlannerUserModel] = relationship(back_populates="ratings")


class BlockedTimeModel(Base):
    __tablename__ = "blocked_times"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("planner_users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    event_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    user: Mapped[PlannerUserModel] = relationship(back_populates="blocked_times")


class RecurringCommitmentModel(Base):
    __tablename__ = "recurring_commitments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("planner_users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    start_time: Mapped[str] = mapped_column(String(8), nullable=False)
    end_time: Mapped[str] = mapped_column(String(8), nullable=False)
    days_of_week: Mapped[list[int]] = mapped_column(JSONType, default=list, nullable=False)
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    event_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    user: Mapped[PlannerUserModel] = relationship(back_populates="recurring_commitments")


class StudySessionModel(TimestampMixin, Base):
    __tablename__ = "study_sessions"
    __table_args__ = (
        Index("ix_study_sessions_user_scheduled", "user_id", "scheduled_at"),
        Index("ix_study_sessions_user_topic", "user_id", "topic_id"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("planner_users.id", ondelete="CASCADE"), nullable=False
    )
    topic_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="scheduled", nullable=False)
    rationale: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    week_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    rerating_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped[PlannerUserModel] = relationship(back_populates="sessions")


class PersistenceAuditEventModel(Base):
    __tablename__ = "persistence_audit_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("planner_users.id", ondelete="SET NULL"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )


__all__ = [
    "BlockedTimeModel",
    "PersistenceAuditEventModel",
    "PlannerUserModel",
    "RecurringCommitmentModel",
    "StudySessionModel",
    "TopicRatingModel",
]
