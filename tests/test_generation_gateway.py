from __future__ import annotations

import json

from sqlalchemy import select

from mealplan.errors import GenerationError
from mealplan.models import GenerationLog
from mealplan.schemas import CoreIngredients, PrepSchedule
from mealplan.services.generation import (
    STAGE_INGREDIENTS,
    STAGE_MEALS,
    STAGE_PREP,
    ContentGenerationGateway,
    parse_stage_payload,
)
from tests.db_case import DatabaseTestCase
from tests.fakes import ScriptedCompletion, unavailable

CONTEXT = {
    "profile": {
        "dietary_prefs": ["no_restrictions"],
        "target_calories": 2200,
        "target_protein": 160,
        "target_carbs": 220,
        "target_fat": 70,
        "prep_time": 30,
        "prep_style": "day_of",
        "meal_types": ["breakfast", "lunch", "dinner", "snack"],
    },
    "recent_meal_names": ["Turkey Chili"],
    "liked_meals": ["Salmon Bowl"],
    "disliked_meals": ["Tuna Melt"],
    "liked_ingredients": ["spinach"],
    "disliked_ingredients": ["olives"],
    "theme": None,
    "protein_focus": {"protein": "chicken", "mealType": "dinner"},
}


class ParseStagePayloadTest(DatabaseTestCase):
    async def test_code_fences_are_stripped(self):
        raw = "```json\n" + json.dumps({"proteins": ["eggs"], "vegetables": [], "fruits": [], "grains": [],
                                         "fats": [], "dairy": []}) + "\n```"
        parsed = parse_stage_payload(STAGE_INGREDIENTS, raw, CoreIngredients)
        self.assertEqual(parsed.proteins, ["eggs"])

    async def test_invalid_json_keeps_raw_response(self):
        with self.assertRaises(GenerationError) as ctx:
            parse_stage_payload(STAGE_PREP, "{not json", PrepSchedule)
        self.assertEqual(ctx.exception.stage, STAGE_PREP)
        self.assertEqual(ctx.exception.raw_response, "{not json")

    async def test_missing_fields_fail_validation(self):
        with self.assertRaises(GenerationError) as ctx:
            parse_stage_payload(STAGE_PREP, json.dumps({"daily_assembly": {}}), PrepSchedule)
        self.assertIn("malformed", ctx.exception.message)

    async def test_non_object_payload_rejected(self):
        with self.assertRaises(GenerationError):
            parse_stage_payload(STAGE_INGREDIENTS, "[1, 2, 3]", CoreIngredients)


class ContentGenerationGatewayTest(DatabaseTestCase):
    async def test_stage_calls_are_validated_and_logged(self):
        completion = ScriptedCompletion()
        gateway = ContentGenerationGateway(completion)

        ingredients = await gateway.generate_core_ingredients(CONTEXT, user_id="user-1")
        meals = await gateway.generate_meals(CONTEXT, ingredients.model_dump(), user_id="user-1")
        schedule = await gateway.generate_prep_sessions(
            CONTEXT, ingredients.model_dump(), meals.model_dump()["meals"], user_id="user-1"
        )

        self.assertIn("chicken breast", ingredients.proteins)
        self.assertEqual(len(meals.meals), 28)
        self.assertTrue(schedule.prep_sessions)
        self.assertEqual(completion.stages, [STAGE_INGREDIENTS, STAGE_MEALS, STAGE_PREP])
        self.assertIn("chicken", completion.calls[0]["user_prompt"].lower())

        async with self.Session() as session:
            logs = (await session.execute(select(GenerationLog))).scalars().all()
        self.assertEqual(sorted(log.stage for log in logs), sorted([STAGE_INGREDIENTS, STAGE_MEALS, STAGE_PREP]))
        self.assertTrue(all(log.error_message is None for log in logs))

    async def test_empty_ingredients_rejected(self):
        empty = json.dumps({k: [] for k in ("proteins", "vegetables", "fruits", "grains", "fats", "dairy")})
        gateway = ContentGenerationGateway(ScriptedCompletion(**{STAGE_INGREDIENTS: empty}))
        with self.assertRaises(GenerationError) as ctx:
            await gateway.generate_core_ingredients(CONTEXT, user_id="user-1")
        self.assertEqual(ctx.exception.stage, STAGE_INGREDIENTS)

    async def test_transport_failure_is_logged_and_raised(self):
        gateway = ContentGenerationGateway(ScriptedCompletion(**{STAGE_MEALS: unavailable(STAGE_MEALS)}))
        with self.assertRaises(GenerationError):
            await gateway.generate_meals(CONTEXT, {"proteins": ["eggs"]}, user_id="user-1")
        async with self.Session() as session:
            log = (await session.execute(select(GenerationLog))).scalar_one()
        self.assertEqual(log.stage, STAGE_MEALS)
        self.assertEqual(log.error_message, "Unable to reach the content generation service")
