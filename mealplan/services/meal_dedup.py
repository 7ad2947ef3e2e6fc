from __future__ import annotations

import logging
import re
import uuid
from typing import Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Meal
from ..schemas import GeneratedMeal

logger = logging.getLogger(__name__)

_PUNCTUATION_RE = re.compile(r"[^\w\s]|_")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_meal_name(name: str) -> str:
    """Case, punctuation and whitespace insensitive form of a meal name."""
    lowered = _PUNCTUATION_RE.sub(" ", (name or "").lower())
    return _WHITESPACE_RE.sub(" ", lowered).strip()


class MealDeduplicator:
    """Maps generated meals onto a user's stored meals for one pipeline run.

    The key is ``(meal_type, normalized name)``. A stored meal is reused as-is
    and only its ``times_used`` grows; the content generated for the repeat is
    discarded. Keys already resolved in this run are served from memory, so a
    meal repeated across the week yields one row with one use per slot.

    Writes are flushed, not committed; the caller owns the transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        meal_plan_id: uuid.UUID | None = None,
        theme_id: uuid.UUID | None = None,
        theme_name: str | None = None,
        source_type: str = "ai_generated",
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.meal_plan_id = meal_plan_id
        self.theme_id = theme_id
        self.theme_name = theme_name
        self.source_type = source_type
        self._resolved: Dict[Tuple[str, str], Meal] = {}
        self.created = 0
        self.reused = 0

    async def resolve(self, generated: GeneratedMeal) -> uuid.UUID:
        normalized = normalize_meal_name(generated.name)
        key = (generated.type, normalized)

        cached = self._resolved.get(key)
        if cached is not None:
            cached.times_used += 1
            await self.session.flush()
            return cached.id

        meal = await self._lookup(normalized, generated.type)
        if meal is not None:
            meal.times_used += 1
            await self.session.flush()
            self.reused += 1
        else:
            meal = await self._insert(generated, normalized)
        self._resolved[key] = meal
        return meal.id

    async def _lookup(self, normalized: str, meal_type: str) -> Optional[Meal]:
        result = await self.session.execute(
            select(Meal).where(
                Meal.source_user_id == self.user_id,
                Meal.name_normalized == normalized,
                Meal.meal_type == meal_type,
            )
        )
        return result.scalar_one_or_none()

    async def _insert(self, generated: GeneratedMeal, normalized: str) -> Meal:
        meal = Meal(
            name=generated.name.strip(),
            name_normalized=normalized,
            meal_type=generated.type,
            ingredients=[ingredient.model_dump() for ingredient in generated.ingredients],
            instructions=list(generated.instructions),
            calories=generated.macros.calories,
            protein=generated.macros.protein,
            carbs=generated.macros.carbs,
            fat=generated.macros.fat,
            prep_time_minutes=generated.prep_time_minutes,
            times_used=1,
            source_type=self.source_type,
            source_user_id=self.user_id,
            source_meal_plan_id=self.meal_plan_id,
            theme_id=self.theme_id,
            theme_name=self.theme_name,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(meal)
        except IntegrityError:
            # A concurrent run for the same user stored this meal first.
            logger.info(
                "Meal insert lost race; reusing stored meal user=%s type=%s name=%s",
                self.user_id,
                generated.type,
                normalized,
            )
            existing = await self._lookup(normalized, generated.type)
            if existing is None:
                raise
            existing.times_used += 1
            await self.session.flush()
            self.reused += 1
            return existing
        self.created += 1
        return meal
