from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..db import get_session
from ..errors import (
    BatchPrepConflictError,
    BatchPrepUnavailableError,
    GenerationError,
    InputError,
    PipelineError,
)
from ..models import (
    BatchPrepStatus,
    GenerationJob,
    JobStatus,
    JobType,
    Meal,
    MealPlan,
    PlanSlot,
    PrepArtifact,
    PrepVariant,
)
from ..observability import bind_job_context, capture_pipeline_exception, clear_job_context
from ..schemas import DAYS_OF_WEEK
from .fixtures import FixtureGateway
from .generation import ContentGenerationGateway
from .jobs import create_job, fail_job, find_in_flight_job, get_job, transition_job
from .steps import StepLedger

logger = logging.getLogger(__name__)

STEP_LOAD_PLAN = "load_plan"
STEP_TRANSFORM = "transform_to_batch"
STEP_SAVE_BATCH = "save_batch"
STEP_MARK_COMPLETED = "mark_completed"

PROGRESS_MESSAGES = {
    JobStatus.FETCHING_INPUTS: "Loading your meal plan...",
    JobStatus.GENERATING_PREP: "Building your batch prep schedule...",
    JobStatus.SAVING: "Saving your batch prep schedule...",
    JobStatus.COMPLETED: "Batch prep ready!",
}

# Assembly-only or quick-cook meals that should stay out of a Sunday session.
NEVER_BATCH_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"yogurt.*bowl",
        r"yogurt.*parfait",
        r"cottage cheese",
        r"fresh.*fruit",
        r"fruit.*salad",
        r"toast",
        r"scrambled.*egg",
        r"fried.*egg",
        r"poached.*egg",
        r"omelett?e",
        r"smoothie",
        r"protein.*shake",
        r"quesadilla",
        r"grilled.*cheese",
    )
]
_MEAL_ID_RE = re.compile(r"^meal_([a-z]+)_([a-z]+)_\d+$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_batch_schedule(schedule: Dict[str, Any]) -> List[str]:
    """Warnings for a batch schedule: assembly-only meals batched, batched
    meals without a daily assembly entry. Empty for day-of schedules."""
    sessions = schedule.get("prep_sessions") or []
    batch_session = next((s for s in sessions if s.get("session_type") == "weekly_batch"), None)
    if batch_session is None:
        return []
    warnings: List[str] = []
    batched_ids: set[str] = set()
    for task in batch_session.get("prep_tasks") or []:
        description = task.get("description") or ""
        if any(pattern.search(description) for pattern in NEVER_BATCH_PATTERNS):
            warnings.append(f'"{description}" looks assembly-only and should not be batch prepped')
        batched_ids.update(task.get("meal_ids") or [])
    assembly = schedule.get("daily_assembly") or {}
    for meal_id in sorted(batched_ids):
        match = _MEAL_ID_RE.match(meal_id)
        if not match:
            continue
        day, meal_type = match.groups()
        if not (assembly.get(day) or {}).get(meal_type):
            warnings.append(f"Batch-prepped meal {meal_id} has no daily assembly entry")
    return warnings


async def request_batch_prep(
    session: AsyncSession,
    *,
    meal_plan_id: uuid.UUID,
    user_id: str,
) -> Tuple[GenerationJob, bool]:
    """Create the batch prep job for a plan and mark the plan pending.

    Returns ``(job, created)``; an already queued job comes back with
    ``created=False``. Raises LookupError for a missing plan,
    PermissionError for another user's plan,
    BatchPrepConflictError while a transformation is generating, and
    BatchPrepUnavailableError when the plan has no day-of schedule.
    """
    plan = await session.get(MealPlan, meal_plan_id)
    if plan is None:
        raise LookupError("Meal plan not found")
    if plan.user_id != user_id:
        raise PermissionError("Meal plan does not belong to user")
    if plan.batch_prep_status == BatchPrepStatus.GENERATING:
        raise BatchPrepConflictError("Batch prep is already being generated for this meal plan")

    existing = await find_in_flight_job(
        session, user_id, job_type=JobType.BATCH_PREP, meal_plan_id=meal_plan_id
    )
    if existing is not None:
        logger.info("Batch prep already queued plan=%s job=%s", meal_plan_id, existing.id)
        return existing, False

    day_of = await _get_artifact(session, meal_plan_id, PrepVariant.DAY_OF)
    if day_of is None:
        raise BatchPrepUnavailableError("Meal plan has no prep schedule to transform")

    test_mode = await _source_test_mode(session, plan)
    job = await create_job(
        session,
        user_id=user_id,
        job_type=JobType.BATCH_PREP,
        meal_plan_id=meal_plan_id,
        options={"test_mode": test_mode},
        commit=False,
    )
    plan.batch_prep_status = BatchPrepStatus.PENDING
    try:
        await session.commit()
    except Exception:  # pragma: no cover
        await session.rollback()
        raise
    await session.refresh(job)
    return job, True


async def get_batch_prep_state(
    session: AsyncSession,
    *,
    meal_plan_id: uuid.UUID,
    user_id: str,
) -> Dict[str, Any]:
    plan = await session.get(MealPlan, meal_plan_id)
    if plan is None:
        raise LookupError("Meal plan not found")
    if plan.user_id != user_id:
        raise PermissionError("Meal plan does not belong to user")
    artifact = await _get_artifact(session, meal_plan_id, PrepVariant.BATCH)
    return {
        "meal_plan_id": str(plan.id),
        "status": plan.batch_prep_status,
        "has_batch_prep": artifact is not None,
    }


async def _get_artifact(session: AsyncSession, meal_plan_id: uuid.UUID, variant: str) -> Optional[PrepArtifact]:
    result = await session.execute(
        select(PrepArtifact).where(PrepArtifact.meal_plan_id == meal_plan_id, PrepArtifact.variant == variant)
    )
    return result.scalar_one_or_none()


async def _source_test_mode(session: AsyncSession, plan: MealPlan) -> bool:
    """Whether the job that generated ``plan`` served fixture content."""
    if plan.source_job_id is None:
        return False
    source = await session.get(GenerationJob, plan.source_job_id)
    return bool(source is not None and (source.options or {}).get("test_mode"))


async def _set_plan_status(meal_plan_id: uuid.UUID, status: str) -> None:
    async with get_session() as session:
        plan = await session.get(MealPlan, meal_plan_id)
        if plan is not None:
            plan.batch_prep_status = status
            await session.commit()


async def _plan_meals(session: AsyncSession, meal_plan_id: uuid.UUID) -> List[Dict[str, Any]]:
    rows = (
        await session.execute(
            select(PlanSlot, Meal)
            .join(Meal, Meal.id == PlanSlot.meal_id)
            .where(PlanSlot.meal_plan_id == meal_plan_id)
        )
    ).all()
    day_order = {day: idx for idx, day in enumerate(DAYS_OF_WEEK)}
    rows = sorted(rows, key=lambda row: (day_order.get(row[0].day, 7), row[0].meal_type, row[0].position))
    return [
        {
            "day": slot.day,
            "type": slot.meal_type,
            "name": meal.name,
            "prep_time_minutes": meal.prep_time_minutes,
            "instructions": meal.instructions or [],
        }
        for slot, meal in rows
    ]


class BatchPrepRun:
    def __init__(self, *, job_id: uuid.UUID, meal_plan_id: uuid.UUID, user_id: str, ledger: StepLedger, gateway: Any):
        self.job_id = job_id
        self.meal_plan_id = meal_plan_id
        self.user_id = user_id
        self.ledger = ledger
        self.gateway = gateway

    def _enter(self, status: str):
        async def hook() -> None:
            async with get_session() as session:
                await transition_job(session, self.job_id, status, progress_message=PROGRESS_MESSAGES[status])

        return hook

    async def execute(self) -> None:
        loaded = await self.ledger.run(
            STEP_LOAD_PLAN, self._load_plan, on_first_run=self._enter(JobStatus.FETCHING_INPUTS)
        )
        schedule = await self.ledger.run(
            STEP_TRANSFORM,
            lambda: self._transform(loaded),
            on_first_run=self._enter(JobStatus.GENERATING_PREP),
        )
        await self.ledger.run_atomic(
            STEP_SAVE_BATCH,
            lambda session: self._save(session, schedule),
            on_first_run=self._enter(JobStatus.SAVING),
        )
        await self.ledger.run(STEP_MARK_COMPLETED, self._mark_completed)

    async def _load_plan(self) -> Dict[str, Any]:
        async with get_session() as session:
            plan = await session.get(MealPlan, self.meal_plan_id)
            if plan is None or plan.user_id != self.user_id:
                raise InputError("Meal plan not found")
            day_of = await _get_artifact(session, self.meal_plan_id, PrepVariant.DAY_OF)
            if day_of is None:
                raise InputError("Meal plan has no prep schedule to transform")
            meals = await _plan_meals(session, self.meal_plan_id)
            plan.batch_prep_status = BatchPrepStatus.GENERATING
            payload = {
                "week_start_date": plan.week_start_date.isoformat(),
                "core_ingredients": plan.core_ingredients or {},
                "day_of_schedule": day_of.payload,
                "meals": meals,
            }
            await session.commit()
        return payload

    async def _transform(self, loaded: Dict[str, Any]) -> Dict[str, Any]:
        schedule = await self.gateway.transform_to_batch(
            loaded["day_of_schedule"],
            loaded["meals"],
            loaded["core_ingredients"],
            user_id=self.user_id,
            job_id=self.job_id,
            week_start_date=loaded["week_start_date"],
        )
        payload = schedule.model_dump()
        warnings = validate_batch_schedule(payload)
        if warnings:
            logger.warning(
                "Batch prep schedule validation warnings plan=%s count=%s warnings=%s",
                self.meal_plan_id,
                len(warnings),
                warnings,
            )
        return payload

    async def _save(self, session: AsyncSession, schedule: Dict[str, Any]) -> Dict[str, Any]:
        artifact = await _get_artifact(session, self.meal_plan_id, PrepVariant.BATCH)
        if artifact is None:
            artifact = PrepArtifact(meal_plan_id=self.meal_plan_id, variant=PrepVariant.BATCH, payload=schedule)
            session.add(artifact)
        else:
            artifact.payload = schedule
        plan = await session.get(MealPlan, self.meal_plan_id)
        plan.batch_prep_status = BatchPrepStatus.COMPLETED
        await session.flush()
        return {"artifact_id": str(artifact.id)}

    async def _mark_completed(self) -> Dict[str, Any]:
        async with get_session() as session:
            await transition_job(
                session,
                self.job_id,
                JobStatus.COMPLETED,
                progress_message=PROGRESS_MESSAGES[JobStatus.COMPLETED],
            )
        return {"meal_plan_id": str(self.meal_plan_id)}


async def run_batch_prep_pipeline(
    job_id: uuid.UUID | str,
    meal_plan_id: uuid.UUID | str,
    user_id: str,
    *,
    gateway: Any = None,
) -> bool:
    """Transform a plan's day-of schedule into a batch schedule.

    On failure the job and the plan's ``batch_prep_status`` become ``failed``;
    the plan and its day-of schedule are untouched.
    """
    job_uuid = job_id if isinstance(job_id, uuid.UUID) else uuid.UUID(str(job_id))
    plan_uuid = meal_plan_id if isinstance(meal_plan_id, uuid.UUID) else uuid.UUID(str(meal_plan_id))
    settings = get_settings()
    bind_job_context(job_id=str(job_uuid), user_id=user_id, meal_plan_id=str(plan_uuid))
    try:
        async with get_session() as session:
            job = await get_job(session, job_uuid)
        if job is None or job.job_type != JobType.BATCH_PREP:
            logger.error("Batch prep invoked for unknown job job=%s", job_uuid)
            return False
        if job.status in JobStatus.TERMINAL:
            return job.status == JobStatus.COMPLETED

        if settings.generation_test_mode or (job.options or {}).get("test_mode"):
            logger.info("Generation test mode active; serving fixture batch prep job=%s", job_uuid)
            gateway = FixtureGateway()
        elif gateway is None:
            gateway = ContentGenerationGateway()
        ledger = await StepLedger(job_uuid).load()
        await BatchPrepRun(
            job_id=job_uuid, meal_plan_id=plan_uuid, user_id=user_id, ledger=ledger, gateway=gateway
        ).execute()
        logger.info("Batch prep completed job=%s plan=%s", job_uuid, plan_uuid)
        return True
    except PipelineError as exc:
        logger.warning("Batch prep failed job=%s plan=%s error=%s", job_uuid, plan_uuid, exc.message)
        capture_pipeline_exception(exc, job_id=str(job_uuid), stage=getattr(exc, "stage", None))
        debug = exc.as_debug_payload() if isinstance(exc, GenerationError) else exc.debug_data
        await _record_failure(job_uuid, plan_uuid, exc.message, debug)
        return False
    except Exception as exc:
        logger.exception("Unexpected batch prep error job=%s plan=%s", job_uuid, plan_uuid)
        capture_pipeline_exception(exc, job_id=str(job_uuid))
        await _record_failure(
            job_uuid, plan_uuid, "Something went wrong while generating your batch prep", {"error": repr(exc)}
        )
        return False
    finally:
        clear_job_context()


async def _record_failure(
    job_id: uuid.UUID,
    meal_plan_id: uuid.UUID,
    message: str,
    debug_data: Optional[Dict[str, Any]],
) -> None:
    async with get_session() as session:
        await fail_job(
            session,
            job_id,
            message,
            debug_data={**(debug_data or {}), "timestamp": _utcnow().isoformat()},
        )
    await _set_plan_status(meal_plan_id, BatchPrepStatus.FAILED)
