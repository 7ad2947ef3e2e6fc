from __future__ import annotations

import uuid
from datetime import date

from sqlalchemy import func, select

from mealplan.models import Meal, MealPlan, PlanSlot
from mealplan.schemas import GeneratedMeal
from mealplan.services.meal_dedup import MealDeduplicator, normalize_meal_name
from tests.db_case import DatabaseTestCase


def generated(name: str, meal_type: str = "lunch", day: str = "monday", calories: float = 500) -> GeneratedMeal:
    return GeneratedMeal.model_validate(
        {
            "day": day,
            "type": meal_type,
            "name": name,
            "ingredients": [
                {"name": "chicken breast", "amount": "6", "unit": "oz", "category": "protein"},
            ],
            "instructions": ["Cook it."],
            "prep_time_minutes": 20,
            "macros": {"calories": calories, "protein": 40, "carbs": 30, "fat": 10},
        }
    )


class NormalizeMealNameTest(DatabaseTestCase):
    async def test_normalization_ignores_case_punctuation_and_spacing(self):
        self.assertEqual(normalize_meal_name("  Grilled   Chicken-Bowl! "), "grilled chicken bowl")
        self.assertEqual(normalize_meal_name("Grilled chicken bowl"), normalize_meal_name("GRILLED CHICKEN, BOWL"))
        self.assertEqual(normalize_meal_name("Chicken_Rice"), "chicken rice")


class MealDeduplicatorTest(DatabaseTestCase):
    async def _plan(self, session) -> uuid.UUID:
        plan = MealPlan(id=uuid.uuid4(), user_id="user-1", week_start_date=date(2026, 1, 5))
        session.add(plan)
        await session.flush()
        return plan.id

    async def _slot(self, session, plan_id, meal_id, day, meal_type, position=0):
        session.add(
            PlanSlot(meal_plan_id=plan_id, meal_id=meal_id, day=day, meal_type=meal_type, position=position)
        )

    async def test_repeats_within_and_across_plans_share_one_row(self):
        days = ["monday", "wednesday", "friday"]
        async with self.Session() as session:
            plan_id = await self._plan(session)
            dedup = MealDeduplicator(session, user_id="user-1", meal_plan_id=plan_id)
            for day in days:
                meal_id = await dedup.resolve(generated("Grilled Chicken Bowl", day=day))
                await self._slot(session, plan_id, meal_id, day, "lunch")
            await session.commit()
            self.assertEqual((dedup.created, dedup.reused), (1, 0))

        async with self.Session() as session:
            plan_id = await self._plan(session)
            dedup = MealDeduplicator(session, user_id="user-1", meal_plan_id=plan_id)
            meal_id = await dedup.resolve(generated("grilled chicken bowl!", day="tuesday", calories=900))
            await self._slot(session, plan_id, meal_id, "tuesday", "lunch")
            await session.commit()
            self.assertEqual((dedup.created, dedup.reused), (0, 1))

        async with self.Session() as session:
            meals = (await session.execute(select(Meal))).scalars().all()
            slot_count = await session.scalar(select(func.count()).select_from(PlanSlot))
        self.assertEqual(len(meals), 1)
        self.assertEqual(meals[0].times_used, slot_count)
        self.assertEqual(meals[0].times_used, 4)
        # content of the first generation is kept
        self.assertEqual(meals[0].calories, 500)
        self.assertEqual(meals[0].name, "Grilled Chicken Bowl")

    async def test_same_name_different_type_creates_two_rows(self):
        async with self.Session() as session:
            plan_id = await self._plan(session)
            dedup = MealDeduplicator(session, user_id="user-1", meal_plan_id=plan_id)
            await dedup.resolve(generated("Grilled Chicken Bowl", meal_type="breakfast"))
            await session.commit()
        async with self.Session() as session:
            plan_id = await self._plan(session)
            dedup = MealDeduplicator(session, user_id="user-1", meal_plan_id=plan_id)
            await dedup.resolve(generated("Grilled Chicken Bowl", meal_type="lunch"))
            await session.commit()

        async with self.Session() as session:
            rows = (await session.execute(select(Meal.meal_type, Meal.times_used))).all()
        self.assertEqual(sorted(rows), [("breakfast", 1), ("lunch", 1)])

    async def test_meals_are_scoped_per_user(self):
        async with self.Session() as session:
            for user_id in ("user-1", "user-2"):
                dedup = MealDeduplicator(session, user_id=user_id)
                await dedup.resolve(generated("Salmon Bowl"))
            await session.commit()
            count = await session.scalar(select(func.count()).select_from(Meal))
        self.assertEqual(count, 2)

    async def test_insert_race_falls_back_to_stored_meal(self):
        async with self.Session() as session:
            winner = MealDeduplicator(session, user_id="user-1")
            stored_id = await winner.resolve(generated("Turkey Chili", meal_type="dinner"))
            await session.commit()

        async with self.Session() as session:
            await self._plan(session)
            loser = MealDeduplicator(session, user_id="user-1")
            # Skip the lookup to reproduce a run that checked before the winner committed.
            meal = await loser._insert(generated("Turkey Chili", meal_type="dinner"), "turkey chili")
            await session.commit()
            self.assertEqual(meal.id, stored_id)
            self.assertEqual((loser.created, loser.reused), (0, 1))

        async with self.Session() as session:
            rows = (await session.execute(select(Meal))).scalars().all()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].times_used, 2)
