"""Allow one unfinished meal plan job per user.

Revision ID: c7e915a2d4b8
Revises: 8c42e6f19d03
Create Date: 2026-10-18 14:10:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "c7e915a2d4b8"
down_revision = "8c42e6f19d03"
branch_labels = None
depends_on = None

IN_FLIGHT_MEAL_PLAN_JOB = "job_type = 'meal_plan' AND status NOT IN ('completed', 'failed')"


def upgrade() -> None:
    # Older duplicates would block the index; keep the newest per user.
    op.execute(
        sa.text(
            """
            UPDATE generation_jobs AS j
            SET status = 'failed',
                error_message = 'Superseded by a newer meal plan request',
                updated_at = now()
            WHERE j.job_type = 'meal_plan'
              AND j.status NOT IN ('completed', 'failed')
              AND EXISTS (
                SELECT 1 FROM generation_jobs AS newer
                WHERE newer.user_id = j.user_id
                  AND newer.job_type = 'meal_plan'
                  AND newer.status NOT IN ('completed', 'failed')
                  AND newer.created_at > j.created_at
              )
            """
        )
    )
    op.create_index(
        "uq_generation_jobs_user_in_flight_meal_plan",
        "generation_jobs",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text(IN_FLIGHT_MEAL_PLAN_JOB),
    )


def downgrade() -> None:
    op.drop_index("uq_generation_jobs_user_in_flight_meal_plan", table_name="generation_jobs")
