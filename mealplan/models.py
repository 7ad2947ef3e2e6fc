from __future__ import annotations

from datetime import date, datetime
import uuid
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

json_type = JSON().with_variant(JSONB, "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class TimestampMixin:
    """Common created/updated timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class JobStatus:
    PENDING = "pending"
    FETCHING_INPUTS = "fetching_inputs"
    GENERATING_INGREDIENTS = "generating_ingredients"
    GENERATING_MEALS = "generating_meals"
    GENERATING_PREP = "generating_prep"
    SAVING = "saving"
    COMPLETED = "completed"
    FAILED = "failed"

    ORDER = (
        PENDING,
        FETCHING_INPUTS,
        GENERATING_INGREDIENTS,
        GENERATING_MEALS,
        GENERATING_PREP,
        SAVING,
        COMPLETED,
    )
    TERMINAL = frozenset({COMPLETED, FAILED})
    IN_FLIGHT = frozenset(ORDER[:-1])


IN_FLIGHT_MEAL_PLAN_JOB = text("job_type = 'meal_plan' AND status NOT IN ('completed', 'failed')")


class JobType:
    MEAL_PLAN = "meal_plan"
    BATCH_PREP = "batch_prep"


class BatchPrepStatus:
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class PrepVariant:
    DAY_OF = "day_of"
    BATCH = "batch"


class FanOutStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class GenerationJob(Base, TimestampMixin):
    __tablename__ = "generation_jobs"
    __table_args__ = (
        # At most one unfinished meal plan job per user.
        Index(
            "uq_generation_jobs_user_in_flight_meal_plan",
            "user_id",
            unique=True,
            postgresql_where=IN_FLIGHT_MEAL_PLAN_JOB,
            sqlite_where=IN_FLIGHT_MEAL_PLAN_JOB,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False, default=JobType.MEAL_PLAN)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=JobStatus.PENDING)
    progress_message: Mapped[Optional[str]] = mapped_column(String(255))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    debug_data: Mapped[Optional[dict]] = mapped_column(json_type)
    meal_plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    options: Mapped[Optional[dict]] = mapped_column(json_type)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"GenerationJob(id={self.id}, type={self.job_type}, status={self.status})"


class GenerationJobHistory(Base):
    __tablename__ = "generation_job_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("generation_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    progress_message: Mapped[Optional[str]] = mapped_column(String(255))
    meal_plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class JobStep(Base):
    """Idempotency ledger: one row per completed step of a job."""

    __tablename__ = "generation_job_steps"
    __table_args__ = (UniqueConstraint("job_id", "step_name", name="uq_job_steps_job_step"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("generation_jobs.id", ondelete="CASCADE"), nullable=False
    )
    step_name: Mapped[str] = mapped_column(String(64), nullable=False)
    result: Mapped[Optional[dict]] = mapped_column(json_type)
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class UserProfile(Base, TimestampMixin):
    __tablename__ = "user_profiles"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(320))
    display_name: Mapped[Optional[str]] = mapped_column(String(128))
    dietary_prefs: Mapped[Optional[list]] = mapped_column(json_type)
    target_calories: Mapped[int] = mapped_column(Integer, nullable=False, default=2000)
    target_protein: Mapped[int] = mapped_column(Integer, nullable=False, default=150)
    target_carbs: Mapped[int] = mapped_column(Integer, nullable=False, default=200)
    target_fat: Mapped[int] = mapped_column(Integer, nullable=False, default=70)
    prep_time: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    prep_style: Mapped[str] = mapped_column(String(32), nullable=False, default="day_of")
    meal_types: Mapped[Optional[list]] = mapped_column(json_type)
    email_notifications: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class MealPreference(Base, TimestampMixin):
    __tablename__ = "meal_preferences"
    __table_args__ = (UniqueConstraint("user_id", "meal_name", name="uq_meal_preferences_user_meal"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    meal_name: Mapped[str] = mapped_column(String(255), nullable=False)
    preference: Mapped[str] = mapped_column(String(16), nullable=False)  # liked|disliked


class IngredientPreference(Base, TimestampMixin):
    __tablename__ = "ingredient_preferences"
    __table_args__ = (
        UniqueConstraint("user_id", "ingredient_name", name="uq_ingredient_preferences_user_ingredient"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    ingredient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    preference: Mapped[str] = mapped_column(String(16), nullable=False)  # liked|disliked


class Theme(Base, TimestampMixin):
    __tablename__ = "meal_plan_themes"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    emoji: Mapped[Optional[str]] = mapped_column(String(16))
    ingredient_guidance: Mapped[Optional[dict]] = mapped_column(json_type)
    cooking_style_guidance: Mapped[Optional[str]] = mapped_column(Text)
    meal_name_style: Mapped[Optional[str]] = mapped_column(Text)
    compatible_diets: Mapped[Optional[list]] = mapped_column(json_type)
    incompatible_diets: Mapped[Optional[list]] = mapped_column(json_type)
    peak_seasons: Mapped[Optional[list]] = mapped_column(json_type)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"Theme(id={self.id}, name={self.name})"


class UserThemePreference(Base):
    __tablename__ = "user_theme_preferences"
    __table_args__ = (UniqueConstraint("user_id", "theme_id", name="uq_user_theme_preferences_user_theme"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    theme_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("meal_plan_themes.id", ondelete="CASCADE"), nullable=False
    )
    preference: Mapped[str] = mapped_column(String(16), nullable=False)  # preferred|blocked


class MealPlan(Base, TimestampMixin):
    __tablename__ = "meal_plans"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    core_ingredients: Mapped[Optional[dict]] = mapped_column(json_type)
    theme_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("meal_plan_themes.id", ondelete="SET NULL")
    )
    prep_style: Mapped[str] = mapped_column(String(32), nullable=False, default="day_of")
    title: Mapped[Optional[str]] = mapped_column(String(255))
    protein_focus: Mapped[Optional[dict]] = mapped_column(json_type)
    is_favorite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    source_job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), unique=True)
    batch_prep_status: Mapped[Optional[str]] = mapped_column(String(16))

    def __repr__(self) -> str:
        return f"MealPlan(id={self.id}, user_id={self.user_id}, week_start_date={self.week_start_date})"


class Meal(Base, TimestampMixin):
    __tablename__ = "meals"
    __table_args__ = (
        UniqueConstraint(
            "source_user_id", "name_normalized", "meal_type", name="uq_meals_user_name_type"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    name_normalized: Mapped[str] = mapped_column(String(255), nullable=False)
    meal_type: Mapped[str] = mapped_column(String(32), nullable=False)
    ingredients: Mapped[Optional[list]] = mapped_column(json_type)
    instructions: Mapped[Optional[list]] = mapped_column(json_type)
    calories: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    protein: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    carbs: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    fat: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    prep_time_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    times_used: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False, default="ai_generated")
    source_user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    source_meal_plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    theme_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    theme_name: Mapped[Optional[str]] = mapped_column(String(128))


class PlanSlot(Base, TimestampMixin):
    __tablename__ = "meal_plan_meals"
    __table_args__ = (
        UniqueConstraint(
            "meal_plan_id", "day", "meal_type", "snack_number", "position", name="uq_meal_plan_meals_slot"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    meal_plan_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("meal_plans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    meal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("meals.id", ondelete="CASCADE"), nullable=False
    )
    day: Mapped[str] = mapped_column(String(16), nullable=False)
    meal_type: Mapped[str] = mapped_column(String(32), nullable=False)
    snack_number: Mapped[Optional[int]] = mapped_column(Integer)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_original: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class PrepArtifact(Base, TimestampMixin):
    __tablename__ = "prep_artifacts"
    __table_args__ = (UniqueConstraint("meal_plan_id", "variant", name="uq_prep_artifacts_plan_variant"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    meal_plan_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("meal_plans.id", ondelete="CASCADE"), nullable=False
    )
    variant: Mapped[str] = mapped_column(String(16), nullable=False)
    payload: Mapped[dict] = mapped_column(json_type, nullable=False)


class FanOutTask(Base, TimestampMixin):
    __tablename__ = "fanout_tasks"
    __table_args__ = (UniqueConstraint("meal_plan_id", "kind", name="uq_fanout_tasks_plan_kind"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    meal_plan_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("meal_plans.id", ondelete="CASCADE"), nullable=False
    )
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=FanOutStatus.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    payload: Mapped[Optional[dict]] = mapped_column(json_type)


class UserUsageCounter(Base, TimestampMixin):
    __tablename__ = "user_usage_counters"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    plans_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    themed_plans_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class PlanHistory(Base):
    __tablename__ = "meal_plan_history"

    meal_plan_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("meal_plans.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    theme_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    protein_focus: Mapped[Optional[dict]] = mapped_column(json_type)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class GenerationLog(Base):
    __tablename__ = "generation_logs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    model: Mapped[Optional[str]] = mapped_column(String(64))
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    output: Mapped[Optional[str]] = mapped_column(Text)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
