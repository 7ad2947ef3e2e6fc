"""Seed the system meal plan theme catalog.

Revision ID: 8c42e6f19d03
Revises: 5b1d0c3e7a10
Create Date: 2026-10-18 09:30:00
"""
from __future__ import annotations

import uuid

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "8c42e6f19d03"
down_revision = "5b1d0c3e7a10"
branch_labels = None
depends_on = None

_NAMESPACE = uuid.UUID("6f1c3a52-2a7e-4c55-9a43-5d0f3b6e8e11")

# name, display name, emoji, description, flavor profile, cooking style,
# meal name style, compatible diets, incompatible diets, peak months
THEMES = [
    (
        "mediterranean", "Mediterranean", "\U0001fad2",
        "Sun-kissed flavors from the Greek isles and coastal Italy. Fresh herbs, olive oil, and bright citrus.",
        "bright, herby, citrus-forward, olive oil-based, tangy from feta and lemon",
        "Grilling, roasting and fresh preparations: sheet pan roasts, quick sautes, grain bowls, composed salads.",
        'Mediterranean names such as "Greek Chicken Power Bowl" or "Lemon Herb Salmon".',
        ["no_restrictions", "gluten_free"], ["dairy_free"], [4, 5, 6, 7, 8, 9],
    ),
    (
        "asian_fusion", "Asian Fusion", "\U0001f962",
        "Bold umami flavors from across Asia. Soy, ginger, sesame, and aromatic spices.",
        "umami-rich, sweet-savory balance, aromatic, fresh herbs, hint of heat",
        "Stir-frying, steaming and quick high-heat cooking: wok stir-fries, rice bowls, noodle dishes.",
        'Asian-inspired names such as "Teriyaki Salmon Bowl" or "Ginger Beef Stir-Fry".',
        ["no_restrictions", "dairy_free"], [], [],
    ),
    (
        "mexican_latin", "Mexican & Latin", "\U0001f32e",
        "Vibrant, bold flavors from Mexico and Latin America. Cumin, lime, cilantro, and fresh peppers.",
        "bold, zesty, smoky-spicy, bright citrus, fresh herbs",
        "Layered seasoning and fresh toppings: sheet pan fajitas, burrito bowls, grilled proteins with salsas.",
        'Latin-inspired names such as "Chipotle Chicken Bowl" or "Lime Cilantro Shrimp".',
        ["no_restrictions", "gluten_free"], [], [5, 6, 7, 8, 9],
    ),
    (
        "summer_fresh", "Summer Fresh", "☀️",
        "Light, refreshing meals perfect for hot days. Grilling, salads, and minimal cooking.",
        "light, bright, refreshing, minimal heavy sauces, emphasis on freshness",
        "Grilling, raw preparations and quick assembly: grain salads, lettuce wraps, no-cook prep.",
        'Fresh, summery names such as "Summer Corn & Shrimp Bowl".',
        ["no_restrictions", "gluten_free", "dairy_free"], [], [6, 7, 8],
    ),
    (
        "comfort_classics", "Comfort Classics", "\U0001f372",
        "Hearty, satisfying meals that feel like home. Familiar flavors, warm preparations.",
        "savory, warming, familiar, herb-forward, comforting richness",
        "One-pot meals, sheet pan dinners, skillet meals and hearty soups.",
        'Comforting names such as "Turkey Meatball Skillet" or "Loaded Sweet Potato Bowl".',
        ["no_restrictions"], ["paleo"], [10, 11, 12, 1, 2, 3],
    ),
    (
        "high_protein_power", "High-Protein Power", "\U0001f4aa",
        "Maximum protein for serious athletes. Lean meats, eggs, Greek yogurt, and protein-rich plants.",
        "clean, simple, protein-forward, minimal added fats, functional fuel",
        "Lean cooking methods: grilling, baking, poaching, meal prep containers.",
        'Athletic names such as "Protein Power Bowl" or "Lean Turkey Meatballs".',
        ["no_restrictions", "gluten_free", "dairy_free", "paleo"], [], [],
    ),
    (
        "plant_forward", "Plant-Forward", "\U0001f966",
        "Vegetables take center stage with protein supporting. Not vegetarian, but veggie-heavy.",
        "earthy, colorful, nutrient-dense, varied textures, umami from roasted vegetables",
        "Roasting for caramelization: grain bowls, roasted vegetable plates, hearty salads.",
        'Vegetable-forward names such as "Rainbow Buddha Bowl".',
        ["no_restrictions", "vegetarian", "vegan", "gluten_free", "dairy_free"], [], [],
    ),
    (
        "quick_easy", "Quick & Easy", "⚡",
        "Maximum efficiency, minimum fuss. Simple ingredients, fast prep, easy cleanup.",
        "simple, accessible, no-fuss, familiar flavors, convenience without sacrifice",
        "Assembly over cooking: wraps, grain bowls, sheet pan meals.",
        'Approachable names such as "Sheet Pan Chicken & Veggies".',
        ["no_restrictions", "gluten_free", "dairy_free"], [], [],
    ),
    (
        "middle_eastern", "Middle Eastern", "\U0001f9c6",
        "Rich spices and bold flavors from the Levant and beyond. Tahini, za'atar, and warming spices.",
        "warm spices, nutty tahini, bright herbs, smoky grilled meats, tangy yogurt sauces",
        "Layered spices and fresh herbs: grilled kebabs, mezze plates, grain bowls.",
        'Middle Eastern names such as "Lamb Kofta Bowl".',
        ["no_restrictions", "gluten_free"], ["dairy_free"], [],
    ),
    (
        "tropical", "Tropical", "\U0001f3dd️",
        "Bright, island-inspired flavors. Coconut, pineapple, citrus, and fresh seafood.",
        "sweet-tangy, coconut-forward, bright citrus, fresh and vibrant, hint of heat",
        "Grilled proteins with fruit salsas, poke-style bowls, coconut-based curries.",
        'Island-inspired names such as "Coconut Lime Shrimp".',
        ["no_restrictions", "dairy_free", "gluten_free", "paleo"], [], [5, 6, 7, 8, 9],
    ),
    (
        "fall_harvest", "Fall Harvest", "\U0001f342",
        "Cozy autumn flavors. Squash, apples, warm spices, and hearty preparations.",
        "earthy, slightly sweet, warming spices, savory herbs, caramelized depth",
        "Roasting fall vegetables: sheet pan roasts, one-pot meals, warm grain salads.",
        'Autumnal names such as "Harvest Chicken Sheet Pan".',
        ["no_restrictions", "gluten_free"], [], [9, 10, 11],
    ),
    (
        "italian", "Italian", "\U0001f35d",
        "Classic Italian flavors. Tomatoes, fresh basil, garlic, and quality olive oil.",
        "tomato-forward, garlicky, herbaceous, olive oil-based, umami from parmesan, bright acidity",
        "Simple quality ingredients: pasta dishes, sheet pan chicken parmesan, sausage with peppers.",
        'Italian names such as "Tuscan Chicken Pasta" or "Pesto Grilled Chicken".',
        ["no_restrictions"], ["dairy_free", "gluten_free"], [],
    ),
    (
        "vietnamese", "Vietnamese", "\U0001f957",
        "Light, fresh Vietnamese flavors. Fish sauce, lime, fresh herbs, and aromatic balance.",
        "bright, fresh, herbaceous, fish sauce umami, lime-forward",
        "Fresh, light preparations: bun-style rice bowls, lettuce wraps, quick stir-fries.",
        'Vietnamese names such as "Lemongrass Pork Vermicelli".',
        ["no_restrictions", "dairy_free", "gluten_free"], [], [5, 6, 7, 8, 9],
    ),
    (
        "indian_inspired", "Indian-Inspired", "\U0001f35b",
        "Warming Indian spices and aromatic curries. Turmeric, cumin, garam masala, and yogurt-based sauces.",
        "warm spices, aromatic, creamy yogurt-based sauces, layered complexity, hint of heat",
        "One-pot curries, sheet pan tikka masala, dal, biryani-style rice bowls.",
        'Indian-inspired names such as "Chicken Tikka Masala Bowl".',
        ["no_restrictions", "gluten_free"], [], [10, 11, 12, 1, 2, 3],
    ),
    (
        "seafood_focus", "Seafood Focus", "\U0001f41f",
        "Ocean-fresh protein power. Salmon, shrimp, white fish, and omega-3 rich meals.",
        "light, bright, lemony, herb-forward, clean ocean flavors",
        "Quick-cooking methods: baked fish with veggies, pan-seared salmon, fish tacos.",
        'Seafood-forward names such as "Cajun Shrimp Bowl".',
        ["no_restrictions", "gluten_free", "dairy_free", "paleo"], [], [],
    ),
]


def _themes_table() -> sa.Table:
    json_type = sa.JSON().with_variant(postgresql.JSONB, "postgresql")
    return sa.table(
        "meal_plan_themes",
        sa.column("id", postgresql.UUID(as_uuid=True)),
        sa.column("name", sa.String),
        sa.column("display_name", sa.String),
        sa.column("description", sa.Text),
        sa.column("emoji", sa.String),
        sa.column("ingredient_guidance", json_type),
        sa.column("cooking_style_guidance", sa.Text),
        sa.column("meal_name_style", sa.Text),
        sa.column("compatible_diets", json_type),
        sa.column("incompatible_diets", json_type),
        sa.column("peak_seasons", json_type),
        sa.column("is_active", sa.Boolean),
    )


def upgrade() -> None:
    rows = []
    for name, display, emoji, description, flavor, cooking, naming, compatible, incompatible, seasons in THEMES:
        rows.append(
            {
                "id": uuid.uuid5(_NAMESPACE, name),
                "name": name,
                "display_name": display,
                "description": description,
                "emoji": emoji,
                "ingredient_guidance": {"flavor_profile": flavor},
                "cooking_style_guidance": cooking,
                "meal_name_style": naming,
                "compatible_diets": compatible,
                "incompatible_diets": incompatible,
                "peak_seasons": seasons,
                "is_active": True,
            }
        )
    op.bulk_insert(_themes_table(), rows)


def downgrade() -> None:
    names = ", ".join(f"'{theme[0]}'" for theme in THEMES)
    op.execute(f"DELETE FROM meal_plan_themes WHERE name IN ({names})")
