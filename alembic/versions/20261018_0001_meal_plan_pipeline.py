"""Meal plan pipeline schema.

Revision ID: 5b1d0c3e7a10
Revises:
Create Date: 2026-10-18 09:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "5b1d0c3e7a10"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    ]


def upgrade() -> None:
    json_type = sa.JSON().with_variant(postgresql.JSONB, "postgresql")
    uuid_type = postgresql.UUID(as_uuid=True)

    op.create_table(
        "generation_jobs",
        sa.Column("id", uuid_type, primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("job_type", sa.String(length=32), nullable=False, server_default="meal_plan"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("progress_message", sa.String(length=255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("debug_data", json_type, nullable=True),
        sa.Column("meal_plan_id", uuid_type, nullable=True),
        sa.Column("options", json_type, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_generation_jobs_user_id", "generation_jobs", ["user_id"])
    op.create_index("ix_generation_jobs_meal_plan_id", "generation_jobs", ["meal_plan_id"])

    op.create_table(
        "generation_job_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_id", uuid_type, sa.ForeignKey("generation_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("progress_message", sa.String(length=255), nullable=True),
        sa.Column("meal_plan_id", uuid_type, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    )
    op.create_index("ix_generation_job_history_job_id", "generation_job_history", ["job_id"])

    op.create_table(
        "generation_job_steps",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_id", uuid_type, sa.ForeignKey("generation_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("step_name", sa.String(length=64), nullable=False),
        sa.Column("result", json_type, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
        sa.UniqueConstraint("job_id", "step_name", name="uq_job_steps_job_step"),
    )

    op.create_table(
        "user_profiles",
        sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("display_name", sa.String(length=128), nullable=True),
        sa.Column("dietary_prefs", json_type, nullable=True),
        sa.Column("target_calories", sa.Integer(), nullable=False, server_default="2000"),
        sa.Column("target_protein", sa.Integer(), nullable=False, server_default="150"),
        sa.Column("target_carbs", sa.Integer(), nullable=False, server_default="200"),
        sa.Column("target_fat", sa.Integer(), nullable=False, server_default="70"),
        sa.Column("prep_time", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("prep_style", sa.String(length=32), nullable=False, server_default="day_of"),
        sa.Column("meal_types", json_type, nullable=True),
        sa.Column("email_notifications", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    for table, column, constraint in (
        ("meal_preferences", "meal_name", "uq_meal_preferences_user_meal"),
        ("ingredient_preferences", "ingredient_name", "uq_ingredient_preferences_user_ingredient"),
    ):
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("user_id", sa.String(length=128), nullable=False),
            sa.Column(column, sa.String(length=255), nullable=False),
            sa.Column("preference", sa.String(length=16), nullable=False),
            *_timestamps(),
            sa.UniqueConstraint("user_id", column, name=constraint),
        )
        op.create_index(f"ix_{table}_user_id", table, ["user_id"])

    op.create_table(
        "meal_plan_themes",
        sa.Column("id", uuid_type, primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("display_name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("emoji", sa.String(length=16), nullable=True),
        sa.Column("ingredient_guidance", json_type, nullable=True),
        sa.Column("cooking_style_guidance", sa.Text(), nullable=True),
        sa.Column("meal_name_style", sa.Text(), nullable=True),
        sa.Column("compatible_diets", json_type, nullable=True),
        sa.Column("incompatible_diets", json_type, nullable=True),
        sa.Column("peak_seasons", json_type, nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "user_theme_preferences",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column(
            "theme_id", uuid_type, sa.ForeignKey("meal_plan_themes.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("preference", sa.String(length=16), nullable=False),
        sa.UniqueConstraint("user_id", "theme_id", name="uq_user_theme_preferences_user_theme"),
    )
    op.create_index("ix_user_theme_preferences_user_id", "user_theme_preferences", ["user_id"])

    op.create_table(
        "meal_plans",
        sa.Column("id", uuid_type, primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("week_start_date", sa.Date(), nullable=False),
        sa.Column("core_ingredients", json_type, nullable=True),
        sa.Column(
            "theme_id", uuid_type, sa.ForeignKey("meal_plan_themes.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("prep_style", sa.String(length=32), nullable=False, server_default="day_of"),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("protein_focus", json_type, nullable=True),
        sa.Column("is_favorite", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("source_job_id", uuid_type, nullable=True, unique=True),
        sa.Column("batch_prep_status", sa.String(length=16), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_meal_plans_user_id", "meal_plans", ["user_id"])

    op.create_table(
        "meals",
        sa.Column("id", uuid_type, primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("name_normalized", sa.String(length=255), nullable=False),
        sa.Column("meal_type", sa.String(length=32), nullable=False),
        sa.Column("ingredients", json_type, nullable=True),
        sa.Column("instructions", json_type, nullable=True),
        sa.Column("calories", sa.Float(), nullable=False, server_default="0"),
        sa.Column("protein", sa.Float(), nullable=False, server_default="0"),
        sa.Column("carbs", sa.Float(), nullable=False, server_default="0"),
        sa.Column("fat", sa.Float(), nullable=False, server_default="0"),
        sa.Column("prep_time_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("times_used", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("source_type", sa.String(length=32), nullable=False, server_default="ai_generated"),
        sa.Column("source_user_id", sa.String(length=128), nullable=False),
        sa.Column("source_meal_plan_id", uuid_type, nullable=True),
        sa.Column("theme_id", uuid_type, nullable=True),
        sa.Column("theme_name", sa.String(length=128), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("source_user_id", "name_normalized", "meal_type", name="uq_meals_user_name_type"),
    )
    op.create_index("ix_meals_source_user_id", "meals", ["source_user_id"])

    op.create_table(
        "meal_plan_meals",
        sa.Column("id", uuid_type, primary_key=True, nullable=False),
        sa.Column("meal_plan_id", uuid_type, sa.ForeignKey("meal_plans.id", ondelete="CASCADE"), nullable=False),
        sa.Column("meal_id", uuid_type, sa.ForeignKey("meals.id", ondelete="CASCADE"), nullable=False),
        sa.Column("day", sa.String(length=16), nullable=False),
        sa.Column("meal_type", sa.String(length=32), nullable=False),
        sa.Column("snack_number", sa.Integer(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_original", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint(
            "meal_plan_id", "day", "meal_type", "snack_number", "position", name="uq_meal_plan_meals_slot"
        ),
    )
    op.create_index("ix_meal_plan_meals_meal_plan_id", "meal_plan_meals", ["meal_plan_id"])

    op.create_table(
        "prep_artifacts",
        sa.Column("id", uuid_type, primary_key=True, nullable=False),
        sa.Column("meal_plan_id", uuid_type, sa.ForeignKey("meal_plans.id", ondelete="CASCADE"), nullable=False),
        sa.Column("variant", sa.String(length=16), nullable=False),
        sa.Column("payload", json_type, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("meal_plan_id", "variant", name="uq_prep_artifacts_plan_variant"),
    )

    op.create_table(
        "fanout_tasks",
        sa.Column("id", uuid_type, primary_key=True, nullable=False),
        sa.Column("meal_plan_id", uuid_type, sa.ForeignKey("meal_plans.id", ondelete="CASCADE"), nullable=False),
        sa.Column("job_id", uuid_type, nullable=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("payload", json_type, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("meal_plan_id", "kind", name="uq_fanout_tasks_plan_kind"),
    )

    op.create_table(
        "user_usage_counters",
        sa.Column("user_id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("plans_generated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("themed_plans_generated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_generated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "meal_plan_history",
        sa.Column(
            "meal_plan_id",
            uuid_type,
            sa.ForeignKey("meal_plans.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("theme_id", uuid_type, nullable=True),
        sa.Column("protein_focus", json_type, nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    )
    op.create_index("ix_meal_plan_history_user_id", "meal_plan_history", ["user_id"])

    op.create_table(
        "generation_logs",
        sa.Column("id", uuid_type, primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("job_id", uuid_type, nullable=True),
        sa.Column("stage", sa.String(length=32), nullable=False),
        sa.Column("model", sa.String(length=64), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("output", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    )
    op.create_index("ix_generation_logs_job_id", "generation_logs", ["job_id"])


def downgrade() -> None:
    op.drop_index("ix_generation_logs_job_id", table_name="generation_logs")
    op.drop_table("generation_logs")
    op.drop_index("ix_meal_plan_history_user_id", table_name="meal_plan_history")
    op.drop_table("meal_plan_history")
    op.drop_table("user_usage_counters")
    op.drop_table("fanout_tasks")
    op.drop_table("prep_artifacts")
    op.drop_index("ix_meal_plan_meals_meal_plan_id", table_name="meal_plan_meals")
    op.drop_table("meal_plan_meals")
    op.drop_index("ix_meals_source_user_id", table_name="meals")
    op.drop_table("meals")
    op.drop_index("ix_meal_plans_user_id", table_name="meal_plans")
    op.drop_table("meal_plans")
    op.drop_index("ix_user_theme_preferences_user_id", table_name="user_theme_preferences")
    op.drop_table("user_theme_preferences")
    op.drop_table("meal_plan_themes")
    for table in ("ingredient_preferences", "meal_preferences"):
        op.drop_index(f"ix_{table}_user_id", table_name=table)
        op.drop_table(table)
    op.drop_table("user_profiles")
    op.drop_table("generation_job_steps")
    op.drop_index("ix_generation_job_history_job_id", table_name="generation_job_history")
    op.drop_table("generation_job_history")
    op.drop_index("ix_generation_jobs_meal_plan_id", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_user_id", table_name="generation_jobs")
    op.drop_table("generation_jobs")
