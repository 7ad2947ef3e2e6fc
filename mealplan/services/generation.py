from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ..config import get_settings
from ..db import get_session
from ..errors import GenerationError
from ..models import GenerationLog
from ..schemas import CoreIngredients, MealsResult, PrepSchedule
from .openai_responses import call_openai_responses
from .prompts import (
    build_batch_transform_prompt,
    build_core_ingredients_prompt,
    build_meals_prompt,
    build_prep_prompt,
)

logger = logging.getLogger(__name__)

STAGE_INGREDIENTS = "core_ingredients"
STAGE_MEALS = "meals"
STAGE_PREP = "prep_sessions"
STAGE_BATCH = "batch_prep"

ModelT = TypeVar("ModelT", bound=BaseModel)

# Signature of call_openai_responses; swapped out in tests.
Completion = Callable[..., str]


def parse_stage_payload(stage: str, raw_text: str, model: Type[ModelT]) -> ModelT:
    """Decode and validate one stage's output, raising GenerationError on any defect."""
    text = (raw_text or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("Generation returned invalid JSON stage=%s error=%s", stage, exc)
        raise GenerationError(stage, f"Generation returned invalid JSON for {stage}", raw_text) from exc
    if not isinstance(payload, dict):
        raise GenerationError(stage, f"Generation returned an unexpected payload for {stage}", raw_text)
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        logger.error("Generation payload failed validation stage=%s fields=%s", stage, fields[:10])
        raise GenerationError(
            stage,
            f"Generation returned malformed {stage} ({len(fields)} invalid field(s))",
            raw_text,
        ) from exc


class ContentGenerationGateway:
    """One call per generation stage against the Responses API.

    Each call runs in a worker thread, is recorded in ``generation_logs`` and
    returns a validated pydantic payload. Transport and format problems all
    surface as ``GenerationError``.
    """

    def __init__(self, completion: Completion | None = None) -> None:
        self._completion = completion or call_openai_responses

    async def generate_core_ingredients(
        self,
        context: Dict[str, Any],
        *,
        user_id: str,
        job_id: uuid.UUID | None = None,
    ) -> CoreIngredients:
        settings = get_settings()
        system_prompt, user_prompt = build_core_ingredients_prompt(context)
        raw = await self._invoke(
            STAGE_INGREDIENTS,
            model=settings.openai_ingredients_model,
            max_output_tokens=settings.openai_ingredients_max_output_tokens,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            user_id=user_id,
            job_id=job_id,
        )
        ingredients = parse_stage_payload(STAGE_INGREDIENTS, raw, CoreIngredients)
        if ingredients.total() == 0:
            raise GenerationError(STAGE_INGREDIENTS, "Generation returned no ingredients", raw)
        return ingredients

    async def generate_meals(
        self,
        context: Dict[str, Any],
        core_ingredients: Dict[str, List[str]],
        *,
        user_id: str,
        job_id: uuid.UUID | None = None,
    ) -> MealsResult:
        settings = get_settings()
        system_prompt, user_prompt = build_meals_prompt(context, core_ingredients)
        raw = await self._invoke(
            STAGE_MEALS,
            model=settings.openai_meals_model,
            max_output_tokens=settings.openai_meals_max_output_tokens,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            user_id=user_id,
            job_id=job_id,
        )
        return parse_stage_payload(STAGE_MEALS, raw, MealsResult)

    async def generate_prep_sessions(
        self,
        context: Dict[str, Any],
        core_ingredients: Dict[str, List[str]],
        meals: Sequence[Dict[str, Any]],
        *,
        user_id: str,
        job_id: uuid.UUID | None = None,
    ) -> PrepSchedule:
        settings = get_settings()
        system_prompt, user_prompt = build_prep_prompt(context, core_ingredients, meals)
        raw = await self._invoke(
            STAGE_PREP,
            model=settings.openai_prep_model,
            max_output_tokens=settings.openai_prep_max_output_tokens,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            user_id=user_id,
            job_id=job_id,
        )
        return parse_stage_payload(STAGE_PREP, raw, PrepSchedule)

    async def transform_to_batch(
        self,
        day_of_schedule: Dict[str, Any],
        meals: Sequence[Dict[str, Any]],
        core_ingredients: Dict[str, List[str]],
        *,
        user_id: str,
        job_id: uuid.UUID | None = None,
        week_start_date: str | None = None,
    ) -> PrepSchedule:
        settings = get_settings()
        system_prompt, user_prompt = build_batch_transform_prompt(
            day_of_schedule, meals, core_ingredients, week_start_date=week_start_date
        )
        raw = await self._invoke(
            STAGE_BATCH,
            model=settings.openai_batch_prep_model,
            max_output_tokens=settings.openai_batch_prep_max_output_tokens,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            user_id=user_id,
            job_id=job_id,
        )
        return parse_stage_payload(STAGE_BATCH, raw, PrepSchedule)

    async def _invoke(
        self,
        stage: str,
        *,
        model: str,
        max_output_tokens: int,
        system_prompt: str,
        user_prompt: str,
        user_id: str,
        job_id: uuid.UUID | None,
    ) -> str:
        settings = get_settings()
        started = time.perf_counter()
        raw: Optional[str] = None
        error: Optional[GenerationError] = None
        logger.info("Generation call started stage=%s job=%s model=%s", stage, job_id, model)
        try:
            raw = await asyncio.to_thread(
                self._completion,
                stage=stage,
                model=model,
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                max_output_tokens=max_output_tokens,
                reasoning_effort=settings.openai_reasoning_effort,
            )
            return raw
        except GenerationError as exc:
            error = exc
            raise
        finally:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.info(
                "Generation call finished stage=%s job=%s duration_ms=%s ok=%s",
                stage,
                job_id,
                duration_ms,
                error is None,
            )
            await _record_generation_log(
                stage=stage,
                model=model,
                prompt=user_prompt,
                output=raw if raw is not None else (error.raw_response if error else None),
                error_message=error.message if error else None,
                duration_ms=duration_ms,
                user_id=user_id,
                job_id=job_id,
            )


async def _record_generation_log(
    *,
    stage: str,
    model: str,
    prompt: str,
    output: Optional[str],
    error_message: Optional[str],
    duration_ms: int,
    user_id: str,
    job_id: uuid.UUID | None,
) -> None:
    try:
        async with get_session() as session:
            session.add(
                GenerationLog(
                    user_id=user_id,
                    job_id=job_id,
                    stage=stage,
                    model=model,
                    prompt=prompt,
                    output=output,
                    error_message=error_message,
                    duration_ms=duration_ms,
                )
            )
            await session.commit()
    except (SQLAlchemyError, RuntimeError):
        logger.warning("Could not persist generation log stage=%s job=%s", stage, job_id, exc_info=True)
