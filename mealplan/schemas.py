from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

DAYS_OF_WEEK = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
DEFAULT_MEAL_TYPES = ("breakfast", "lunch", "dinner", "snack")

DayOfWeek = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
MealType = Literal["breakfast", "lunch", "dinner", "snack"]


# ---------------------------------------------------------------------------
# HTTP API
# ---------------------------------------------------------------------------


class ProteinFocus(BaseModel):
    protein: str = Field(min_length=1, max_length=64)
    mealType: Literal["lunch", "dinner", "both"] = "both"


class CreateMealPlanJobRequest(BaseModel):
    themeSelection: Optional[str] = Field(default=None, max_length=64)
    proteinFocus: Optional[ProteinFocus] = None
    testMode: bool = False


class JobSubmissionResponse(BaseModel):
    jobId: str
    status: str


class JobStatusResponse(BaseModel):
    jobId: str
    jobType: str
    status: str
    progressMessage: Optional[str] = None
    errorMessage: Optional[str] = None
    mealPlanId: Optional[str] = None


class BatchPrepStatusResponse(BaseModel):
    mealPlanId: str
    status: Optional[str] = None
    hasBatchPrep: bool = False


# ---------------------------------------------------------------------------
# Generation payloads (validated stage outputs)
# ---------------------------------------------------------------------------


class CoreIngredients(BaseModel):
    proteins: List[str]
    vegetables: List[str]
    fruits: List[str]
    grains: List[str]
    fats: List[str]
    dairy: List[str]

    def total(self) -> int:
        return sum(len(v) for v in self.model_dump().values())


class GeneratedIngredient(BaseModel):
    name: str = Field(min_length=1)
    amount: str
    unit: str
    category: Literal["produce", "protein", "dairy", "grains", "fats", "frozen", "other"]
    calories: Optional[float] = None
    protein: Optional[float] = None
    carbs: Optional[float] = None
    fat: Optional[float] = None


class Macros(BaseModel):
    calories: float = Field(ge=0)
    protein: float = Field(ge=0)
    carbs: float = Field(ge=0)
    fat: float = Field(ge=0)


class GeneratedMeal(BaseModel):
    day: DayOfWeek
    type: MealType
    snack_number: Optional[int] = Field(default=None, ge=1)
    name: str = Field(min_length=1, max_length=255)
    ingredients: List[GeneratedIngredient]
    instructions: List[str]
    prep_time_minutes: int = Field(ge=0)
    macros: Macros


class MealsResult(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    meals: List[GeneratedMeal] = Field(min_length=1)


class PrepTask(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    description: str
    detailed_steps: List[str] = Field(default_factory=list)
    estimated_minutes: int = Field(ge=0)
    meal_ids: List[str] = Field(default_factory=list)
    completed: bool = False


class PrepSession(BaseModel):
    session_name: str
    session_type: Literal["weekly_batch", "night_before", "day_of_morning", "day_of_dinner"]
    session_day: Optional[DayOfWeek] = None
    session_time_of_day: Optional[Literal["morning", "afternoon", "night"]] = None
    prep_for_date: Optional[str] = None
    estimated_minutes: int = Field(ge=0)
    prep_tasks: List[PrepTask]
    display_order: int = 0


class AssemblyStep(BaseModel):
    time: str
    instructions: str


class PrepSchedule(BaseModel):
    prep_sessions: List[PrepSession] = Field(min_length=1)
    daily_assembly: Dict[str, Dict[str, AssemblyStep]] = Field(default_factory=dict)
