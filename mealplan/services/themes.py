from __future__ import annotations

import logging
import random
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import MealPlan, Theme, UserThemePreference

logger = logging.getLogger(__name__)

BASE_SCORE = 50
PREFERRED_BONUS = 30
SEASONAL_BONUS = 20
DISLIKED_CUISINE_PENALTY = 15
TOP_CANDIDATES = 3
DISLIKED_CUISINE_MIN_MATCHES = 2

NO_THEME = "none"
AUTO_CHOICES = {"", "surprise", "auto"}

REASON_USER_SELECTED = "user selected"
REASON_PREFERRED = "one of your preferred themes"
REASON_SEASONAL = "perfect for this time of year"
REASON_VARIETY = "selected for variety"

CUISINE_KEYWORDS: Dict[str, tuple[str, ...]] = {
    "asian": (
        "teriyaki", "stir-fry", "stir fry", "soy", "ginger", "sesame",
        "rice bowl", "noodle", "thai", "chinese", "japanese", "korean",
    ),
    "mediterranean": (
        "greek", "mediterranean", "feta", "olive", "hummus", "pita",
        "tzatziki", "italian", "tuscan",
    ),
    "mexican": (
        "taco", "burrito", "fajita", "mexican", "chipotle", "cilantro lime",
        "salsa", "enchilada", "quesadilla",
    ),
    "middle eastern": ("shawarma", "falafel", "tahini", "za'atar", "kebab", "kofta", "hummus"),
    "tropical": ("hawaiian", "poke", "coconut", "mango", "pineapple", "jerk"),
}


@dataclass
class ThemeOption:
    """Catalog entry as seen by the selector; detached from the ORM session."""

    id: str
    name: str
    display_name: str
    description: str = ""
    emoji: str | None = None
    ingredient_guidance: Dict[str, Any] | None = None
    cooking_style_guidance: str | None = None
    meal_name_style: str | None = None
    compatible_diets: List[str] = field(default_factory=list)
    incompatible_diets: List[str] = field(default_factory=list)
    peak_seasons: List[int] = field(default_factory=list)

    @classmethod
    def from_model(cls, theme: Theme) -> "ThemeOption":
        return cls(
            id=str(theme.id),
            name=theme.name,
            display_name=theme.display_name,
            description=theme.description or "",
            emoji=theme.emoji,
            ingredient_guidance=theme.ingredient_guidance,
            cooking_style_guidance=theme.cooking_style_guidance,
            meal_name_style=theme.meal_name_style,
            compatible_diets=list(theme.compatible_diets or []),
            incompatible_diets=list(theme.incompatible_diets or []),
            peak_seasons=[int(m) for m in theme.peak_seasons or []],
        )

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ThemeOption":
        return cls(**payload)


@dataclass
class ThemeSelection:
    theme: ThemeOption
    reason: str


def is_theme_compatible(theme: ThemeOption, dietary_prefs: Sequence[str]) -> bool:
    if not dietary_prefs or "no_restrictions" in dietary_prefs:
        return True
    if any(diet in theme.incompatible_diets for diet in dietary_prefs):
        return False
    if theme.compatible_diets:
        return any(diet in theme.compatible_diets for diet in dietary_prefs)
    return True


def detect_disliked_cuisines(disliked_meal_names: Iterable[str]) -> List[str]:
    """Cuisines matched by at least two distinct disliked meal names."""
    lowered = {name.lower() for name in disliked_meal_names if name}
    detected: List[str] = []
    for cuisine, keywords in CUISINE_KEYWORDS.items():
        matches = [name for name in lowered if any(keyword in name for keyword in keywords)]
        if len(matches) >= DISLIKED_CUISINE_MIN_MATCHES:
            detected.append(cuisine)
    return detected


def score_theme(
    theme: ThemeOption,
    *,
    preferred_theme_ids: Sequence[str],
    disliked_cuisines: Sequence[str],
    current_month: int,
) -> int:
    score = BASE_SCORE
    if theme.id in preferred_theme_ids:
        score += PREFERRED_BONUS
    if current_month in theme.peak_seasons:
        score += SEASONAL_BONUS
    if disliked_cuisines:
        hints = " ".join([theme.name, theme.display_name, theme.description]).lower()
        for cuisine in disliked_cuisines:
            if cuisine in hints:
                score -= DISLIKED_CUISINE_PENALTY
    return score


def _selection_reason(theme: ThemeOption, preferred_theme_ids: Sequence[str], current_month: int) -> str:
    reasons: List[str] = []
    if theme.id in preferred_theme_ids:
        reasons.append(REASON_PREFERRED)
    if current_month in theme.peak_seasons:
        reasons.append(REASON_SEASONAL)
    return " and ".join(reasons) if reasons else REASON_VARIETY


def _eligible(
    catalog: Sequence[ThemeOption],
    dietary_prefs: Sequence[str],
    recent_theme_ids: Sequence[str],
    blocked_theme_ids: Sequence[str],
) -> List[ThemeOption]:
    compatible = [theme for theme in catalog if is_theme_compatible(theme, dietary_prefs)]
    passes = (
        lambda t: t.id not in recent_theme_ids and t.id not in blocked_theme_ids,
        lambda t: t.id not in recent_theme_ids,
        lambda t: True,
    )
    for attempt, keep in enumerate(passes):
        eligible = [theme for theme in compatible if keep(theme)]
        if eligible:
            if attempt:
                logger.info("Theme eligibility relaxed relaxation=%s candidates=%s", attempt, len(eligible))
            return eligible
    return []


def select_theme(
    catalog: Sequence[ThemeOption],
    *,
    dietary_prefs: Sequence[str] = (),
    recent_theme_ids: Sequence[str] = (),
    preferred_theme_ids: Sequence[str] = (),
    blocked_theme_ids: Sequence[str] = (),
    disliked_meal_names: Sequence[str] = (),
    current_month: int,
    explicit_choice: str | None = None,
    rng: random.Random | None = None,
) -> Optional[ThemeSelection]:
    """Pick a theme for a new plan, or ``None`` for a classic plan.

    ``explicit_choice`` is ``"none"`` (no theme), ``None``/``"surprise"``/``"auto"``
    (score the catalog), or a catalog id. A specific id is honoured when it is
    in the catalog and compatible with the user's diets; otherwise selection
    falls back to scoring.

    Auto mode filters out diet-incompatible, recently used and blocked themes.
    When nothing is left the blocked filter is dropped, then the recent filter;
    diet compatibility is never relaxed. The top three by score form the pool
    the winner is drawn from.
    """
    choice = (explicit_choice or "").strip()
    if choice.lower() == NO_THEME:
        return None

    if choice and choice.lower() not in AUTO_CHOICES:
        chosen = next((theme for theme in catalog if theme.id == choice), None)
        if chosen is not None and is_theme_compatible(chosen, dietary_prefs):
            return ThemeSelection(theme=chosen, reason=REASON_USER_SELECTED)
        logger.info("Requested theme unavailable; falling back to auto selection theme_id=%s", choice)

    eligible = _eligible(catalog, dietary_prefs, recent_theme_ids, blocked_theme_ids)
    if not eligible:
        logger.info("No compatible theme available diets=%s catalog=%s", list(dietary_prefs), len(catalog))
        return None

    disliked_cuisines = detect_disliked_cuisines(disliked_meal_names)
    scored = [
        (
            score_theme(
                theme,
                preferred_theme_ids=preferred_theme_ids,
                disliked_cuisines=disliked_cuisines,
                current_month=current_month,
            ),
            theme,
        )
        for theme in eligible
    ]
    # sorted() is stable, so ties keep catalog order
    scored = sorted(scored, key=lambda item: item[0], reverse=True)
    top = scored[: min(TOP_CANDIDATES, len(scored))]
    picker = rng or random
    _, winner = top[picker.randrange(len(top))]
    return ThemeSelection(
        theme=winner,
        reason=_selection_reason(winner, preferred_theme_ids, current_month),
    )


async def load_active_themes(session: AsyncSession) -> List[ThemeOption]:
    result = await session.execute(
        select(Theme).where(Theme.is_active.is_(True)).order_by(Theme.name)
    )
    return [ThemeOption.from_model(theme) for theme in result.scalars().all()]


async def load_recent_theme_ids(session: AsyncSession, user_id: str, *, limit: int = 3) -> List[str]:
    """Theme ids of the user's last ``limit`` themed plans, newest first."""
    if limit <= 0:
        return []
    result = await session.execute(
        select(MealPlan.theme_id)
        .where(MealPlan.user_id == user_id, MealPlan.theme_id.is_not(None))
        .order_by(MealPlan.created_at.desc())
        .limit(limit)
    )
    return [str(theme_id) for theme_id in result.scalars().all() if theme_id is not None]


async def load_theme_preferences(session: AsyncSession, user_id: str) -> Dict[str, List[str]]:
    result = await session.execute(
        select(UserThemePreference.theme_id, UserThemePreference.preference).where(
            UserThemePreference.user_id == user_id
        )
    )
    preferences: Dict[str, List[str]] = {"preferred": [], "blocked": []}
    for theme_id, preference in result.all():
        if preference in preferences:
            preferences[preference].append(str(theme_id))
    return preferences
