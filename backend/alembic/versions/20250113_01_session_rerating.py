"""Record completion time and the re-rating given when a study session is finished."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20250113_01_session_rerating"
down_revision = "20250106_01_planner_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("study_sessions") as batch_op:
        batch_op.add_column(sa.Column("rerating_score", sa.Integer(), nullable=True))
        batch_op.add_column(sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("study_sessions") as batch_op:
        batch_op.drop_column("completed_at")
        batch_op.drop_column("rerating_score")
