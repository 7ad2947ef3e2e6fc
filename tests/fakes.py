from __future__ import annotations

import json
from typing import Any, Dict, List, Union

from mealplan.errors import GenerationError
from mealplan.services.fixtures import (
    FIXTURE_INGREDIENTS,
    fixture_batch_schedule,
    fixture_day_of_schedule,
    fixture_meals,
)
from mealplan.services.generation import STAGE_BATCH, STAGE_INGREDIENTS, STAGE_MEALS, STAGE_PREP

Reply = Union[str, Exception]


def default_replies(meal_types=("breakfast", "lunch", "dinner", "snack")) -> Dict[str, Reply]:
    meals = fixture_meals(list(meal_types)).model_dump()
    day_of = fixture_day_of_schedule(meals["meals"]).model_dump()
    return {
        STAGE_INGREDIENTS: json.dumps(FIXTURE_INGREDIENTS),
        STAGE_MEALS: json.dumps(meals),
        STAGE_PREP: json.dumps(day_of),
        STAGE_BATCH: json.dumps(fixture_batch_schedule(day_of).model_dump()),
    }


class ScriptedCompletion:
    """Stands in for call_openai_responses with canned text per stage."""

    def __init__(self, **overrides: Reply) -> None:
        self.replies: Dict[str, Reply] = {**default_replies(), **overrides}
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, *, stage: str, **kwargs: Any) -> str:
        self.calls.append({"stage": stage, **kwargs})
        reply = self.replies[stage]
        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def stages(self) -> List[str]:
        return [call["stage"] for call in self.calls]


def unavailable(stage: str) -> GenerationError:
    return GenerationError(stage, "Unable to reach the content generation service")
