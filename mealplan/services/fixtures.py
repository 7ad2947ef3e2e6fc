"""Canned generation output for test mode.

Lets the full pipeline run end to end, persistence and dedup included,
without calling the paid generation service.
"""
from __future__ import annotations

from typing import Any, Dict, List, Sequence

from ..schemas import DAYS_OF_WEEK, CoreIngredients, MealsResult, PrepSchedule
from .prompts import summarize_meals_for_prep

FIXTURE_TITLE = "Test Mode Meal Plan"

FIXTURE_INGREDIENTS: Dict[str, List[str]] = {
    "proteins": ["chicken breast", "eggs", "greek yogurt", "salmon"],
    "vegetables": ["spinach", "broccoli", "bell peppers", "sweet potato"],
    "fruits": ["banana", "blueberries"],
    "grains": ["rolled oats", "brown rice", "whole wheat tortillas"],
    "fats": ["olive oil", "almonds", "avocado"],
    "dairy": ["cheddar cheese", "milk"],
}


def _ingredient(name: str, amount: str, unit: str, category: str, calories: float, protein: float,
                carbs: float, fat: float) -> Dict[str, Any]:
    return {
        "name": name,
        "amount": amount,
        "unit": unit,
        "category": category,
        "calories": calories,
        "protein": protein,
        "carbs": carbs,
        "fat": fat,
    }


# Two rotating recipes per meal type; repeats across the week exercise meal reuse.
FIXTURE_RECIPES: Dict[str, List[Dict[str, Any]]] = {
    "breakfast": [
        {
            "name": "Blueberry Overnight Oats",
            "ingredients": [
                _ingredient("rolled oats", "1/2", "cup", "grains", 150, 5, 27, 3),
                _ingredient("milk", "3/4", "cup", "dairy", 90, 6, 9, 4),
                _ingredient("blueberries", "1/2", "cup", "produce", 40, 0, 10, 0),
            ],
            "instructions": ["Combine oats and milk in a jar.", "Refrigerate overnight.", "Top with blueberries."],
            "prep_time_minutes": 5,
            "macros": {"calories": 280, "protein": 11, "carbs": 46, "fat": 7},
        },
        {
            "name": "Spinach Scrambled Eggs",
            "ingredients": [
                _ingredient("eggs", "3", "large", "protein", 210, 18, 1, 15),
                _ingredient("spinach", "1", "cup", "produce", 7, 1, 1, 0),
                _ingredient("olive oil", "1", "tsp", "fats", 40, 0, 0, 5),
            ],
            "instructions": ["Wilt spinach in oil.", "Add beaten eggs and scramble until set."],
            "prep_time_minutes": 10,
            "macros": {"calories": 257, "protein": 19, "carbs": 2, "fat": 20},
        },
    ],
    "lunch": [
        {
            "name": "Grilled Chicken Rice Bowl",
            "ingredients": [
                _ingredient("chicken breast", "6", "oz", "protein", 280, 52, 0, 6),
                _ingredient("brown rice", "1", "cup", "grains", 215, 5, 45, 2),
                _ingredient("broccoli", "1", "cup", "produce", 30, 3, 6, 0),
            ],
            "instructions": ["Grill chicken for 6 minutes per side.", "Steam broccoli.", "Serve over rice."],
            "prep_time_minutes": 25,
            "macros": {"calories": 525, "protein": 60, "carbs": 51, "fat": 8},
        },
        {
            "name": "Chicken Pepper Wrap",
            "ingredients": [
                _ingredient("whole wheat tortillas", "1", "large", "grains", 170, 5, 28, 4),
                _ingredient("chicken breast", "5", "oz", "protein", 235, 44, 0, 5),
                _ingredient("bell peppers", "1/2", "cup", "produce", 15, 0, 3, 0),
                _ingredient("cheddar cheese", "1", "oz", "dairy", 115, 7, 0, 9),
            ],
            "instructions": ["Saute peppers.", "Fill tortilla with chicken, peppers and cheese.", "Toast in a pan."],
            "prep_time_minutes": 15,
            "macros": {"calories": 535, "protein": 56, "carbs": 31, "fat": 18},
        },
    ],
    "dinner": [
        {
            "name": "Roasted Salmon with Sweet Potato",
            "ingredients": [
                _ingredient("salmon", "6", "oz", "protein", 350, 34, 0, 22),
                _ingredient("sweet potato", "1", "medium", "produce", 110, 2, 26, 0),
                _ingredient("olive oil", "1", "tbsp", "fats", 120, 0, 0, 14),
            ],
            "instructions": ["Roast sweet potato at 425F for 25 minutes.", "Add salmon for the last 12 minutes."],
            "prep_time_minutes": 35,
            "macros": {"calories": 580, "protein": 36, "carbs": 26, "fat": 36},
        },
        {
            "name": "Chicken and Broccoli Stir Fry",
            "ingredients": [
                _ingredient("chicken breast", "6", "oz", "protein", 280, 52, 0, 6),
                _ingredient("broccoli", "2", "cup", "produce", 60, 6, 12, 0),
                _ingredient("brown rice", "3/4", "cup", "grains", 160, 4, 34, 1),
            ],
            "instructions": ["Stir fry chicken until cooked through.", "Add broccoli.", "Serve with rice."],
            "prep_time_minutes": 20,
            "macros": {"calories": 500, "protein": 62, "carbs": 46, "fat": 7},
        },
    ],
    "snack": [
        {
            "name": "Greek Yogurt with Almonds",
            "ingredients": [
                _ingredient("greek yogurt", "1", "cup", "dairy", 130, 23, 9, 0),
                _ingredient("almonds", "1", "oz", "fats", 165, 6, 6, 14),
            ],
            "instructions": ["Top yogurt with almonds."],
            "prep_time_minutes": 2,
            "macros": {"calories": 295, "protein": 29, "carbs": 15, "fat": 14},
        },
        {
            "name": "Banana with Almonds",
            "ingredients": [
                _ingredient("banana", "1", "medium", "produce", 105, 1, 27, 0),
                _ingredient("almonds", "1", "oz", "fats", 165, 6, 6, 14),
            ],
            "instructions": ["Slice banana and serve with almonds."],
            "prep_time_minutes": 2,
            "macros": {"calories": 270, "protein": 7, "carbs": 33, "fat": 14},
        },
    ],
}

SESSION_TYPE_BY_MEAL = {
    "breakfast": "day_of_morning",
    "lunch": "day_of_morning",
    "dinner": "day_of_dinner",
}


def fixture_meals(meal_types: Sequence[str]) -> MealsResult:
    meals: List[Dict[str, Any]] = []
    for day_index, day in enumerate(DAYS_OF_WEEK):
        for meal_type in meal_types:
            recipes = FIXTURE_RECIPES.get(meal_type)
            if not recipes:
                continue
            recipe = recipes[day_index % len(recipes)]
            meals.append(
                {
                    "day": day,
                    "type": meal_type,
                    "snack_number": 1 if meal_type == "snack" else None,
                    **recipe,
                }
            )
    return MealsResult.model_validate({"title": FIXTURE_TITLE, "meals": meals})


def fixture_day_of_schedule(meals: Sequence[Dict[str, Any]]) -> PrepSchedule:
    sessions: List[Dict[str, Any]] = []
    assembly: Dict[str, Dict[str, Dict[str, str]]] = {}
    for order, entry in enumerate(summarize_meals_for_prep(meals)):
        session_type = SESSION_TYPE_BY_MEAL.get(entry["type"])
        if session_type is None:
            continue
        sessions.append(
            {
                "session_name": f"{entry['day'].title()} {entry['type'].title()}",
                "session_type": session_type,
                "session_day": entry["day"],
                "session_time_of_day": "night" if entry["type"] == "dinner" else "morning",
                "prep_for_date": None,
                "estimated_minutes": entry.get("prep_time_minutes") or 0,
                "display_order": order,
                "prep_tasks": [
                    {
                        "id": f"task_{entry['meal_id']}",
                        "description": entry["name"],
                        "detailed_steps": list(entry.get("instructions") or []),
                        "estimated_minutes": entry.get("prep_time_minutes") or 0,
                        "meal_ids": [entry["meal_id"]],
                        "completed": False,
                    }
                ],
            }
        )
        assembly.setdefault(entry["day"], {})[entry["type"]] = {
            "time": "ready when cooked",
            "instructions": f"Cook {entry['name']} fresh.",
        }
    if not sessions:
        sessions.append(
            {
                "session_name": "Weekly Produce Prep",
                "session_type": "weekly_batch",
                "session_day": "sunday",
                "estimated_minutes": 15,
                "prep_tasks": [
                    {"id": "task_produce", "description": "Wash and portion produce", "estimated_minutes": 15}
                ],
            }
        )
    return PrepSchedule.model_validate({"prep_sessions": sessions, "daily_assembly": assembly})


def fixture_batch_schedule(day_of_schedule: Dict[str, Any]) -> PrepSchedule:
    """Fold every day-of task into one Sunday session plus reheat notes."""
    tasks: List[Dict[str, Any]] = []
    assembly: Dict[str, Dict[str, Dict[str, str]]] = {}
    total_minutes = 0
    for session in day_of_schedule.get("prep_sessions") or []:
        for task in session.get("prep_tasks") or []:
            tasks.append({**task, "prep_category": "sunday_batch", "storage": "Refrigerate up to 4 days."})
            total_minutes += int(task.get("estimated_minutes") or 0)
            for meal_id in task.get("meal_ids") or []:
                parts = meal_id.split("_")
                if len(parts) >= 4:
                    assembly.setdefault(parts[1], {})[parts[2]] = {
                        "time": "2 min",
                        "instructions": f"Reheat the prepped {task['description']}.",
                    }
    if not tasks:
        tasks.append(
            {
                "id": "task_produce",
                "description": "Wash and portion produce",
                "estimated_minutes": 15,
                "meal_ids": [],
            }
        )
        total_minutes = 15
    return PrepSchedule.model_validate(
        {
            "prep_sessions": [
                {
                    "session_name": "Sunday Batch Prep",
                    "session_type": "weekly_batch",
                    "session_day": "sunday",
                    "session_time_of_day": "afternoon",
                    "prep_for_date": None,
                    "estimated_minutes": total_minutes,
                    "display_order": 0,
                    "prep_tasks": tasks,
                }
            ],
            "daily_assembly": assembly,
        }
    )


class FixtureGateway:
    """Drop-in replacement for ContentGenerationGateway serving canned content."""

    async def generate_core_ingredients(self, context: Dict[str, Any], **_: Any) -> CoreIngredients:
        return CoreIngredients.model_validate(FIXTURE_INGREDIENTS)

    async def generate_meals(self, context: Dict[str, Any], core_ingredients: Dict[str, List[str]],
                             **_: Any) -> MealsResult:
        return fixture_meals(context["profile"].get("meal_types") or ["breakfast", "lunch", "dinner", "snack"])

    async def generate_prep_sessions(self, context: Dict[str, Any], core_ingredients: Dict[str, List[str]],
                                     meals: Sequence[Dict[str, Any]], **_: Any) -> PrepSchedule:
        return fixture_day_of_schedule(meals)

    async def transform_to_batch(self, day_of_schedule: Dict[str, Any], meals: Sequence[Dict[str, Any]],
                                 core_ingredients: Dict[str, List[str]], **_: Any) -> PrepSchedule:
        return fixture_batch_schedule(day_of_schedule)
