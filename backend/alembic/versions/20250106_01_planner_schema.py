"""Study planner schema: users, ratings, blocked time, commitments, sessions."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20250106_01_planner_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "planner_users",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("display_name", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("has_access", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("weekday_earliest", sa.String(length=5), nullable=True),
        sa.Column("weekday_latest", sa.String(length=5), nullable=True),
        sa.Column("weekend_earliest", sa.String(length=5), nullable=True),
        sa.Column("weekend_latest", sa.String(length=5), nullable=True),
        sa.Column("use_same_weekend_times", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("daily_hours", sa.JSON(), nullable=False),
        sa.Column("session_duration_minutes", sa.Integer(), nullable=True),
        sa.Column("subjects", sa.JSON(), nullable=False),
        sa.Column("topic_order", sa.JSON(), nullable=False),
        sa.Column("priority_topic_ids", sa.JSON(), nullable=False),
    )

    op.create_table(
        "topic_ratings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("planner_users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("topic_id", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.String(length=128), nullable=True),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.UniqueConstraint("user_id", "topic_id", name="uq_topic_ratings_user_topic"),
    )
    op.create_index("ix_topic_ratings_user_id", "topic_ratings", ["user_id"])

    op.create_table(
        "blocked_times",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("planner_users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=True),
        sa.Column("event_id", sa.String(length=128), nullable=True),
    )
    op.create_index("ix_blocked_times_user_id", "blocked_times", ["user_id"])

    op.create_table(
        "recurring_commitments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("planner_users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("start_time", sa.String(length=8), nullable=False),
        sa.Column("end_time", sa.String(length=8), nullable=False),
        sa.Column("days_of_week", sa.JSON(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("label", sa.String(length=255), nullable=True),
        sa.Column("event_id", sa.String(length=128), nullable=True),
    )
    op.create_index("ix_recurring_commitments_user_id", "recurring_commitments", ["user_id"])

    op.create_table(
        "study_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("planner_users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("topic_id", sa.String(length=64), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="scheduled"),
        sa.Column("rationale", sa.JSON(), nullable=True),
        sa.Column("week_start", sa.Date(), nullable=True),
    )
    op.create_index("ix_study_sessions_user_scheduled", "study_sessions", ["user_id", "scheduled_at"])
    op.create_index("ix_study_sessions_user_topic", "study_sessions", ["user_id", "topic_id"])

    op.create_table(
        "persistence_audit_events",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("planner_users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("actor", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("persistence_audit_events")
    op.drop_index("ix_study_sessions_user_topic", table_name="study_sessions")
    op.drop_index("ix_study_sessions_user_scheduled", table_name="study_sessions")
    op.drop_table("study_sessions")
    op.drop_index("ix_recurring_commitments_user_id", table_name="recurring_commitments")
    op.drop_table("recurring_commitments")
    op.drop_index("ix_blocked_times_user_id", table_name="blocked_times")
    op.drop_table("blocked_times")
    op.drop_index("ix_topic_ratings_user_id", table_name="topic_ratings")
    op.drop_table("topic_ratings")
    op.drop_table("planner_users")
