from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from ..schemas import DAYS_OF_WEEK

INGREDIENT_CATEGORIES = ("proteins", "vegetables", "fruits", "grains", "fats", "dairy")

SYSTEM_PROMPT = (
    "You are a meal planning assistant for athletes who track macros. "
    "Respect every dietary restriction and disliked ingredient without exception. "
    "Respond with a single JSON object that matches the requested shape exactly; no prose, no markdown."
)


def format_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, sort_keys=True, default=str)


def meal_slot_id(day: str, meal_type: str, index: int) -> str:
    """Stable id used by prep tasks to reference the meal they prepare."""
    return f"meal_{day}_{meal_type}_{index}"


def _profile_summary(profile: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "dietary_prefs": profile.get("dietary_prefs") or ["no_restrictions"],
        "daily_targets": {
            "calories": profile.get("target_calories"),
            "protein_g": profile.get("target_protein"),
            "carbs_g": profile.get("target_carbs"),
            "fat_g": profile.get("target_fat"),
        },
        "max_prep_minutes_per_meal": profile.get("prep_time"),
        "meal_types": profile.get("meal_types"),
    }


def _theme_section(theme: Optional[Dict[str, Any]]) -> List[str]:
    if not theme:
        return []
    lines = [
        f"THEME: {theme['display_name']} {theme.get('emoji') or ''}".rstrip(),
        theme.get("description") or "",
    ]
    guidance = theme.get("ingredient_guidance") or {}
    if guidance:
        lines.append("THEME_INGREDIENT_GUIDANCE:")
        lines.append(format_json(guidance))
        lines.append("Most proteins and vegetables must come from the theme guidance.")
    if theme.get("cooking_style_guidance"):
        lines.append(f"THEME_COOKING_STYLE: {theme['cooking_style_guidance']}")
    if theme.get("meal_name_style"):
        lines.append(f"THEME_MEAL_NAMES: {theme['meal_name_style']}")
    return lines


def _protein_focus_section(protein_focus: Optional[Dict[str, Any]]) -> List[str]:
    if not protein_focus:
        return []
    meal_type = protein_focus.get("mealType") or "both"
    applies_to = "lunch and dinner" if meal_type == "both" else meal_type
    return [
        f"PROTEIN_FOCUS: {protein_focus['protein']} must be the primary protein for {applies_to} meals this week.",
    ]


def _preferences_section(label: str, liked: Sequence[str], disliked: Sequence[str]) -> List[str]:
    lines: List[str] = []
    if liked:
        lines.append(f"{label} THE USER LIKES: {', '.join(liked)}")
    if disliked:
        lines.append(f"{label} THE USER DISLIKES (avoid anything similar): {', '.join(disliked)}")
    return lines


def build_core_ingredients_prompt(context: Dict[str, Any]) -> tuple[str, str]:
    profile = context["profile"]
    sections: List[str] = [
        "Select a focused set of core ingredients for one week of meals.",
        "USER_PROFILE:",
        format_json(_profile_summary(profile)),
    ]
    sections += _theme_section(context.get("theme"))
    sections += _protein_focus_section(context.get("protein_focus"))
    recent = context.get("recent_meal_names") or []
    if recent:
        sections.append(
            "RECENT_MEALS (choose ingredients that lead to different dishes): " + ", ".join(recent[:30])
        )
    sections += _preferences_section("MEALS", context.get("liked_meals") or [], context.get("disliked_meals") or [])
    disliked_ingredients = context.get("disliked_ingredients") or []
    liked_ingredients = context.get("liked_ingredients") or []
    if liked_ingredients:
        sections.append("INGREDIENTS TO PRIORITISE: " + ", ".join(liked_ingredients))
    if disliked_ingredients:
        sections.append("INGREDIENTS THAT MUST NOT APPEAR: " + ", ".join(disliked_ingredients))
    sections.append(
        "Respond in JSON with exactly these keys, each a list of ingredient names: "
        + ", ".join(INGREDIENT_CATEGORIES)
        + ". Enough quantity overall to cover seven days of the daily targets."
    )
    return SYSTEM_PROMPT, "\n\n".join(s for s in sections if s)


def build_meals_prompt(context: Dict[str, Any], core_ingredients: Dict[str, List[str]]) -> tuple[str, str]:
    profile = context["profile"]
    meal_types = profile.get("meal_types") or []
    sections: List[str] = [
        "Write a 7-day meal plan using the core ingredients below.",
        "USER_PROFILE:",
        format_json(_profile_summary(profile)),
        "CORE_INGREDIENTS:",
        format_json(core_ingredients),
    ]
    sections += _theme_section(context.get("theme"))
    sections += _protein_focus_section(context.get("protein_focus"))
    sections += _preferences_section("MEALS", context.get("liked_meals") or [], context.get("disliked_meals") or [])
    sections.append(
        requirements_block(
            [
                f"Cover every day ({', '.join(DAYS_OF_WEEK)}) and every meal type in {format_json(meal_types)}.",
                "Snacks carry snack_number starting at 1; other meals leave it null.",
                "Daily totals should land within 5% of the calorie and protein targets.",
                "Reusing a meal on several days is fine; keep its name identical when you do.",
                'Respond in JSON: {"title": str, "meals": [{"day", "type", "snack_number", "name", '
                '"ingredients": [{"name", "amount", "unit", "category", "calories", "protein", "carbs", "fat"}], '
                '"instructions": [str], "prep_time_minutes": int, '
                '"macros": {"calories", "protein", "carbs", "fat"}}]}.',
                "Ingredient category is one of produce, protein, dairy, grains, fats, frozen, other.",
            ]
        )
    )
    return SYSTEM_PROMPT, "\n\n".join(s for s in sections if s)


def summarize_meals_for_prep(meals: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    counters: Dict[tuple[str, str], int] = {}
    summary: List[Dict[str, Any]] = []
    for meal in meals:
        key = (meal["day"], meal["type"])
        index = counters.get(key, 0)
        counters[key] = index + 1
        summary.append(
            {
                "meal_id": meal_slot_id(meal["day"], meal["type"], index),
                "day": meal["day"],
                "type": meal["type"],
                "name": meal["name"],
                "prep_time_minutes": meal.get("prep_time_minutes"),
                "instructions": meal.get("instructions") or [],
            }
        )
    return summary


def build_prep_prompt(
    context: Dict[str, Any],
    core_ingredients: Dict[str, List[str]],
    meals: Sequence[Dict[str, Any]],
) -> tuple[str, str]:
    profile = context["profile"]
    sections: List[str] = [
        "Write day-of prep sessions for the meals below. The user cooks fresh for every meal.",
        "USER_PROFILE:",
        format_json(_profile_summary(profile)),
        "CORE_INGREDIENTS:",
        format_json(core_ingredients),
        "MEALS:",
        format_json(summarize_meals_for_prep(meals)),
        requirements_block(
            [
                "Create a session for every meal that needs heat, chopping or mixing; skip grab-and-go items.",
                "Use session_type day_of_morning for breakfast and lunch, day_of_dinner for dinner.",
                "Write quantities for one serving; consolidate identical meals repeated across days into one task.",
                "Every prep task lists the meal_id values it prepares.",
                'Respond in JSON: {"prep_sessions": [{"session_name", "session_type", "session_day", '
                '"session_time_of_day", "prep_for_date", "estimated_minutes", "display_order", '
                '"prep_tasks": [{"id", "description", "detailed_steps", "estimated_minutes", "meal_ids", '
                '"completed"}]}], "daily_assembly": {day: {meal_type: {"time", "instructions"}}}}.',
            ]
        ),
    ]
    return SYSTEM_PROMPT, "\n\n".join(sections)


def build_batch_transform_prompt(
    day_of_schedule: Dict[str, Any],
    meals: Sequence[Dict[str, Any]],
    core_ingredients: Dict[str, List[str]],
    *,
    week_start_date: str | None = None,
) -> tuple[str, str]:
    sections: List[str] = [
        "Transform this day-of prep plan into a batch prep plan: one Sunday session for everything "
        "that keeps well, day-of sessions only for food that must be fresh.",
    ]
    if week_start_date:
        sections.append(f"WEEK_STARTS: {week_start_date}")
    sections += [
        "CORE_INGREDIENTS:",
        format_json(core_ingredients),
        "MEALS:",
        format_json(summarize_meals_for_prep(meals)),
        "DAY_OF_PLAN:",
        format_json(day_of_schedule),
        requirements_block(
            [
                'Batch grains, proteins that reheat well, roasted vegetables and sauces in a "weekly_batch" '
                'session named "Sunday Batch Prep", with storage notes for each task.',
                "Keep eggs cooked to order, yogurt or fruit bowls, toast, smoothies, fresh salads and "
                "avocado dishes in day_of_morning or day_of_dinner sessions.",
                "Every batch-prepped meal needs a daily_assembly entry explaining how to reheat or assemble it.",
                "Respond with the same JSON shape as DAY_OF_PLAN.",
            ]
        ),
    ]
    return SYSTEM_PROMPT, "\n\n".join(sections)


def requirements_block(lines: Sequence[str]) -> str:
    numbered = [f"{idx}. {line}" for idx, line in enumerate(lines, start=1)]
    return "Requirements:\n" + "\n".join(numbered)
