from __future__ import annotations

import logging
import random
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..db import get_session
from ..errors import GenerationError, InputError, PipelineError
from ..models import (
    IngredientPreference,
    JobStatus,
    Meal,
    MealPlan,
    MealPreference,
    PlanSlot,
    PrepArtifact,
    PrepVariant,
    UserProfile,
)
from ..observability import bind_job_context, capture_pipeline_exception, clear_job_context
from ..schemas import DEFAULT_MEAL_TYPES, GeneratedMeal, MealsResult
from .fanout import enqueue_fanout_tasks
from .fixtures import FixtureGateway
from .generation import ContentGenerationGateway
from .jobs import fail_job, get_job, transition_job
from .meal_dedup import MealDeduplicator
from .steps import StepLedger
from .themes import (
    ThemeOption,
    load_active_themes,
    load_recent_theme_ids,
    load_theme_preferences,
    select_theme,
)

logger = logging.getLogger(__name__)

STEP_FETCH_INPUTS = "fetch_inputs"
STEP_SELECT_THEME = "select_theme"
STEP_CORE_INGREDIENTS = "generate_core_ingredients"
STEP_MEALS = "generate_meals"
STEP_PREP = "generate_prep_sessions"
STEP_PERSIST = "persist_plan"
STEP_MARK_COMPLETED = "mark_completed"

PROGRESS_MESSAGES = {
    JobStatus.FETCHING_INPUTS: "Loading your profile...",
    JobStatus.GENERATING_INGREDIENTS: "Selecting ingredients for your week...",
    JobStatus.GENERATING_MEALS: "Creating your 7-day meal plan...",
    JobStatus.GENERATING_PREP: "Building your prep schedule...",
    JobStatus.SAVING: "Saving your meal plan...",
    JobStatus.COMPLETED: "Meal plan ready!",
}

UNEXPECTED_FAILURE_MESSAGE = "Something went wrong while generating your meal plan"


def next_monday(today: date) -> date:
    """The Monday after ``today``; a Monday maps to the following week."""
    days_ahead = (7 - today.weekday()) % 7 or 7
    return today + timedelta(days=days_ahead)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _load_recent_meal_names(session: AsyncSession, user_id: str, plan_window: int) -> List[str]:
    if plan_window <= 0:
        return []
    plan_ids = (
        await session.execute(
            select(MealPlan.id)
            .where(MealPlan.user_id == user_id)
            .order_by(MealPlan.created_at.desc())
            .limit(plan_window)
        )
    ).scalars().all()
    if not plan_ids:
        return []
    names = (
        await session.execute(
            select(Meal.name)
            .join(PlanSlot, PlanSlot.meal_id == Meal.id)
            .where(PlanSlot.meal_plan_id.in_(plan_ids))
            .distinct()
        )
    ).scalars().all()
    return sorted(names)


async def _load_preferences(session: AsyncSession, model, name_column, user_id: str) -> Dict[str, List[str]]:
    rows = (
        await session.execute(select(name_column, model.preference).where(model.user_id == user_id))
    ).all()
    grouped: Dict[str, List[str]] = {"liked": [], "disliked": []}
    for name, preference in rows:
        if preference in grouped:
            grouped[preference].append(name)
    return grouped


def _profile_payload(profile: UserProfile) -> Dict[str, Any]:
    return {
        "dietary_prefs": list(profile.dietary_prefs or []),
        "target_calories": profile.target_calories,
        "target_protein": profile.target_protein,
        "target_carbs": profile.target_carbs,
        "target_fat": profile.target_fat,
        "prep_time": profile.prep_time,
        "prep_style": profile.prep_style,
        "meal_types": list(profile.meal_types or DEFAULT_MEAL_TYPES),
    }


class MealPlanRun:
    """One invocation of the meal plan pipeline for a job.

    Steps go through the job's ``StepLedger`` so a repeated invocation picks
    up after the last recorded step. Status changes happen only in the
    ``on_first_run`` hooks, i.e. once per step.
    """

    def __init__(
        self,
        *,
        job_id: uuid.UUID,
        user_id: str,
        options: Dict[str, Any],
        ledger: StepLedger,
        gateway: Any,
        test_mode: bool,
        today: date,
        rng: random.Random | None = None,
    ) -> None:
        self.job_id = job_id
        self.user_id = user_id
        self.options = options
        self.ledger = ledger
        self.gateway = gateway
        self.test_mode = test_mode
        self.today = today
        self.rng = rng

    def _enter(self, status: str):
        async def hook() -> None:
            async with get_session() as session:
                await transition_job(session, self.job_id, status, progress_message=PROGRESS_MESSAGES[status])

        return hook

    async def execute(self) -> uuid.UUID:
        inputs = await self.ledger.run(
            STEP_FETCH_INPUTS, self._fetch_inputs, on_first_run=self._enter(JobStatus.FETCHING_INPUTS)
        )
        theme_result = await self.ledger.run(STEP_SELECT_THEME, lambda: self._select_theme(inputs))
        context = self._generation_context(inputs, theme_result)

        ingredients = await self.ledger.run(
            STEP_CORE_INGREDIENTS,
            lambda: self._generate_core_ingredients(context),
            on_first_run=self._enter(JobStatus.GENERATING_INGREDIENTS),
        )
        meals_result = await self.ledger.run(
            STEP_MEALS,
            lambda: self._generate_meals(context, ingredients),
            on_first_run=self._enter(JobStatus.GENERATING_MEALS),
        )
        prep_schedule = await self.ledger.run(
            STEP_PREP,
            lambda: self._generate_prep(context, ingredients, meals_result),
            on_first_run=self._enter(JobStatus.GENERATING_PREP),
        )
        persisted = await self.ledger.run_atomic(
            STEP_PERSIST,
            lambda session: self._persist_plan(session, inputs, theme_result, ingredients, meals_result, prep_schedule),
            on_first_run=self._enter(JobStatus.SAVING),
        )
        plan_id = uuid.UUID(persisted["meal_plan_id"])
        await self.ledger.run(STEP_MARK_COMPLETED, lambda: self._mark_completed(plan_id))
        return plan_id

    async def _fetch_inputs(self) -> Dict[str, Any]:
        settings = get_settings()
        async with get_session() as session:
            profile = await session.get(UserProfile, self.user_id)
            if profile is None:
                raise InputError("User profile not found. Please complete onboarding first.")
            meal_prefs = await _load_preferences(session, MealPreference, MealPreference.meal_name, self.user_id)
            ingredient_prefs = await _load_preferences(
                session, IngredientPreference, IngredientPreference.ingredient_name, self.user_id
            )
            recent_meal_names = await _load_recent_meal_names(
                session, self.user_id, settings.recent_meal_plan_window
            )
            catalog = await load_active_themes(session)
            recent_theme_ids = await load_recent_theme_ids(
                session, self.user_id, limit=settings.recent_theme_window
            )
            theme_prefs = await load_theme_preferences(session, self.user_id)
        logger.info(
            "Pipeline inputs loaded job=%s recent_meals=%s themes=%s",
            self.job_id,
            len(recent_meal_names),
            len(catalog),
        )
        return {
            "profile": _profile_payload(profile),
            "email": profile.email,
            "display_name": profile.display_name,
            "email_notifications": bool(profile.email_notifications),
            "recent_meal_names": recent_meal_names,
            "liked_meals": meal_prefs["liked"],
            "disliked_meals": meal_prefs["disliked"],
            "liked_ingredients": ingredient_prefs["liked"],
            "disliked_ingredients": ingredient_prefs["disliked"],
            "catalog": [theme.to_payload() for theme in catalog],
            "recent_theme_ids": recent_theme_ids,
            "preferred_theme_ids": theme_prefs["preferred"],
            "blocked_theme_ids": theme_prefs["blocked"],
        }

    async def _select_theme(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        selection = select_theme(
            [ThemeOption.from_payload(entry) for entry in inputs["catalog"]],
            dietary_prefs=inputs["profile"]["dietary_prefs"],
            recent_theme_ids=inputs["recent_theme_ids"],
            preferred_theme_ids=inputs["preferred_theme_ids"],
            blocked_theme_ids=inputs["blocked_theme_ids"],
            disliked_meal_names=inputs["disliked_meals"],
            current_month=self.today.month,
            explicit_choice=self.options.get("theme_selection"),
            rng=self.rng,
        )
        if selection is None:
            logger.info("No theme for plan job=%s", self.job_id)
            return {"theme": None, "reason": None}
        logger.info(
            "Theme selected job=%s theme=%s reason=%s", self.job_id, selection.theme.name, selection.reason
        )
        return {"theme": selection.theme.to_payload(), "reason": selection.reason}

    def _generation_context(self, inputs: Dict[str, Any], theme_result: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "profile": inputs["profile"],
            "recent_meal_names": inputs["recent_meal_names"],
            "liked_meals": inputs["liked_meals"],
            "disliked_meals": inputs["disliked_meals"],
            "liked_ingredients": inputs["liked_ingredients"],
            "disliked_ingredients": inputs["disliked_ingredients"],
            "theme": theme_result.get("theme"),
            "protein_focus": self.options.get("protein_focus"),
        }

    async def _generate_core_ingredients(self, context: Dict[str, Any]) -> Dict[str, Any]:
        ingredients = await self.gateway.generate_core_ingredients(
            context, user_id=self.user_id, job_id=self.job_id
        )
        return ingredients.model_dump()

    async def _generate_meals(self, context: Dict[str, Any], ingredients: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.gateway.generate_meals(
            context, ingredients, user_id=self.user_id, job_id=self.job_id
        )
        return result.model_dump()

    async def _generate_prep(
        self,
        context: Dict[str, Any],
        ingredients: Dict[str, Any],
        meals_result: Dict[str, Any],
    ) -> Dict[str, Any]:
        meals = meals_result["meals"]
        try:
            schedule = await self.gateway.generate_prep_sessions(
                context, ingredients, meals, user_id=self.user_id, job_id=self.job_id
            )
        except GenerationError as exc:
            profile = context["profile"]
            exc.debug_data = {
                "step": STEP_PREP,
                **exc.as_debug_payload(),
                "context": {
                    "days_count": len({meal["day"] for meal in meals}),
                    "meals_count": len(meals),
                    "profile": {
                        "prep_style": profile.get("prep_style"),
                        "meal_types": profile.get("meal_types"),
                    },
                },
                "timestamp": _utcnow().isoformat(),
            }
            raise
        return schedule.model_dump()

    async def _persist_plan(
        self,
        session: AsyncSession,
        inputs: Dict[str, Any],
        theme_result: Dict[str, Any],
        ingredients: Dict[str, Any],
        meals_result: Dict[str, Any],
        prep_schedule: Dict[str, Any],
    ) -> Dict[str, Any]:
        theme = theme_result.get("theme")
        theme_id = uuid.UUID(theme["id"]) if theme else None
        plan = MealPlan(
            id=uuid.uuid4(),
            user_id=self.user_id,
            week_start_date=next_monday(self.today),
            core_ingredients=ingredients,
            theme_id=theme_id,
            prep_style=inputs["profile"]["prep_style"],
            title=meals_result.get("title"),
            protein_focus=self.options.get("protein_focus"),
            is_favorite=False,
            source_job_id=self.job_id,
        )
        session.add(plan)
        await session.flush()

        dedup = MealDeduplicator(
            session,
            user_id=self.user_id,
            meal_plan_id=plan.id,
            theme_id=theme_id,
            theme_name=theme["display_name"] if theme else None,
            source_type="fixture" if self.test_mode else "ai_generated",
        )
        positions: Dict[tuple[str, str], int] = {}
        meals = MealsResult.model_validate(meals_result).meals
        for generated in meals:
            meal_id = await dedup.resolve(generated)
            session.add(self._slot_for(plan.id, meal_id, generated, positions))

        session.add(PrepArtifact(meal_plan_id=plan.id, variant=PrepVariant.DAY_OF, payload=prep_schedule))
        await session.flush()
        fanout_kinds = await enqueue_fanout_tasks(
            session,
            meal_plan_id=plan.id,
            job_id=self.job_id,
            user_id=self.user_id,
            email=inputs.get("email") if inputs.get("email_notifications") else None,
            display_name=inputs.get("display_name"),
            theme_id=theme["id"] if theme else None,
            theme_name=theme["display_name"] if theme else None,
            protein_focus=self.options.get("protein_focus"),
            batch_prep=inputs["profile"].get("prep_style") == "traditional_batch",
            commit=False,
        )
        logger.info(
            "Meal plan persisted job=%s plan=%s slots=%s meals_created=%s meals_reused=%s",
            self.job_id,
            plan.id,
            len(meals),
            dedup.created,
            dedup.reused,
        )
        return {
            "meal_plan_id": str(plan.id),
            "slots": len(meals),
            "meals_created": dedup.created,
            "meals_reused": dedup.reused,
            "fanout": fanout_kinds,
        }

    @staticmethod
    def _slot_for(
        plan_id: uuid.UUID,
        meal_id: uuid.UUID,
        generated: GeneratedMeal,
        positions: Dict[tuple[str, str], int],
    ) -> PlanSlot:
        key = (generated.day, generated.type)
        position = positions.get(key, 0)
        positions[key] = position + 1
        snack_number = None
        if generated.type == "snack":
            snack_number = generated.snack_number or position + 1
        return PlanSlot(
            meal_plan_id=plan_id,
            meal_id=meal_id,
            day=generated.day,
            meal_type=generated.type,
            snack_number=snack_number,
            position=position,
            is_original=True,
        )

    async def _mark_completed(self, plan_id: uuid.UUID) -> Dict[str, Any]:
        async with get_session() as session:
            await transition_job(
                session,
                self.job_id,
                JobStatus.COMPLETED,
                progress_message=PROGRESS_MESSAGES[JobStatus.COMPLETED],
                meal_plan_id=plan_id,
            )
        return {"meal_plan_id": str(plan_id)}


async def run_meal_plan_pipeline(
    job_id: uuid.UUID | str,
    user_id: str,
    options: Optional[Dict[str, Any]] = None,
    *,
    gateway: Any = None,
    today: date | None = None,
    rng: random.Random | None = None,
) -> Optional[uuid.UUID]:
    """Drive a meal plan job to a terminal status.

    Safe to invoke more than once for the same job: a completed job returns
    its plan id without writing, a failed job is left alone, and a job that
    stopped midway resumes after its last recorded step. A failing step fails
    the job right away; nothing is retried.
    """
    job_uuid = job_id if isinstance(job_id, uuid.UUID) else uuid.UUID(str(job_id))
    options = options or {}
    settings = get_settings()
    bind_job_context(job_id=str(job_uuid), user_id=user_id)
    try:
        async with get_session() as session:
            job = await get_job(session, job_uuid)
        if job is None or job.user_id != user_id:
            logger.error("Pipeline invoked for unknown job job=%s user=%s", job_uuid, user_id)
            return None
        if job.status == JobStatus.COMPLETED:
            logger.info("Pipeline re-invoked for completed job job=%s", job_uuid)
            return job.meal_plan_id
        if job.status == JobStatus.FAILED:
            logger.info("Pipeline re-invoked for failed job job=%s", job_uuid)
            return None

        test_mode = bool(settings.generation_test_mode or options.get("test_mode"))
        if test_mode:
            logger.info("Generation test mode active; serving fixture content job=%s", job_uuid)
            gateway = FixtureGateway()
        elif gateway is None:
            gateway = ContentGenerationGateway()

        ledger = await StepLedger(job_uuid).load()
        run = MealPlanRun(
            job_id=job_uuid,
            user_id=user_id,
            options=options,
            ledger=ledger,
            gateway=gateway,
            test_mode=test_mode,
            today=today or _utcnow().date(),
            rng=rng,
        )
        return await run.execute()
    except PipelineError as exc:
        logger.warning("Meal plan job failed job=%s error=%s", job_uuid, exc.message)
        capture_pipeline_exception(exc, job_id=str(job_uuid), stage=getattr(exc, "stage", None))
        async with get_session() as session:
            await fail_job(session, job_uuid, exc.message, debug_data=exc.debug_data)
        return None
    except Exception as exc:
        logger.exception("Unexpected meal plan pipeline error job=%s", job_uuid)
        capture_pipeline_exception(exc, job_id=str(job_uuid))
        async with get_session() as session:
            await fail_job(
                session,
                job_uuid,
                UNEXPECTED_FAILURE_MESSAGE,
                debug_data={"error": repr(exc), "timestamp": _utcnow().isoformat()},
            )
        return None
    finally:
        clear_job_context()
