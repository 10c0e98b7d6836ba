from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Literal
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

ActivityLevel = Literal["sedentary", "light", "moderate", "active", "veryActive"]
Goal = Literal["maintain", "cut_moderate", "cut_aggressive", "bulk_lean", "bulk_aggressive"]
CostPriority = Literal["best_value", "balanced", "premium"]
Variety = Literal["low", "balanced", "high"]

MAX_PLAN_DAYS = 7
MAX_EATING_OCCASIONS = 6


class Profile(BaseModel):
    """User-entered inputs for one plan run."""

    height: float = Field(ge=100, le=250)
    weight: float = Field(ge=30, le=300)
    age: int = Field(ge=13, le=99)
    sex: Literal["male", "female"] = Field(validation_alias=AliasChoices("sex", "gender"))
    activityLevel: ActivityLevel = "moderate"
    goal: Goal = "maintain"
    dietary: str = Field(
        default="balanced",
        max_length=64,
        validation_alias=AliasChoices("dietary", "dietaryPreference"),
    )
    days: int = Field(default=7, ge=1, le=MAX_PLAN_DAYS)
    eatingOccasions: int = Field(default=3, ge=1, le=MAX_EATING_OCCASIONS)
    store: Optional[str] = Field(default=None, max_length=64)
    costPriority: CostPriority = "balanced"
    variety: Variety = Field(default="balanced", validation_alias=AliasChoices("variety", "mealVariety"))
    cuisine: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(populate_by_name=True)


class NutritionalTargets(BaseModel):
    calories: int
    protein: int
    fat: int
    carbs: int

    model_config = ConfigDict(frozen=True)


class IngredientLine(BaseModel):
    name: str = Field(min_length=1)
    quantity: float = Field(ge=0, validation_alias=AliasChoices("quantity", "qty_value", "qty"))
    unit: str = Field(default="g", validation_alias=AliasChoices("unit", "qty_unit"))
    category: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class Meal(BaseModel):
    name: str = Field(min_length=1)
    type: str = Field(default="meal", validation_alias=AliasChoices("type", "mealType", "meal_type"))
    description: str = ""
    ingredients: List[IngredientLine] = Field(min_length=1)
    subtotal_kcal: float = Field(ge=0)
    subtotal_protein: float = Field(ge=0)
    subtotal_fat: float = Field(ge=0)
    subtotal_carbs: float = Field(ge=0)

    model_config = ConfigDict(populate_by_name=True)


class DayPlan(BaseModel):
    day: int = Field(ge=1)
    meals: List[Meal]


class MealPlan(BaseModel):
    days: List[DayPlan]

    @property
    def day_count(self) -> int:
        return len(self.days)


class ProductOption(BaseModel):
    productId: str
    name: str
    price: float
    packSize: Optional[str] = None
    packAmount: Optional[float] = None
    packUnit: Optional[str] = None
    unitPrice: float
    url: Optional[str] = None
    isCheapest: bool = False
    nutrition: Optional[Dict[str, Any]] = None


class IngredientResolution(BaseModel):
    key: str
    ingredient: str
    status: Literal["matched", "failed"]
    reason: Optional[str] = None
    category: str = "Other"
    store: Optional[str] = None
    product: Optional[ProductOption] = None
    substitutes: List[ProductOption] = Field(default_factory=list)


class ShoppingListItem(BaseModel):
    id: str
    key: str
    name: str
    quantity: float
    unit: str
    category: str
    occurrences: int = 1
    product: Optional[ProductOption] = None
    unitPrice: float = 0.0
    billedQuantity: float = 0.0
    cost: float = 0.0
    unresolved: bool = False
    reason: Optional[str] = None


class ShoppingList(BaseModel):
    items: List[ShoppingListItem] = Field(default_factory=list)
    categories: Dict[str, List[str]] = Field(default_factory=dict)
    totalCost: float = 0.0
    unresolvedCount: int = 0


class StartRunResponse(BaseModel):
    runId: str
    status: str
    phase: str


class SavePlanRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)
    runId: Optional[str] = Field(default=None, min_length=10)
    mealPlan: Optional[List[DayPlan]] = None
    nutritionalTargets: Optional[NutritionalTargets] = None
    shoppingList: Optional[Dict[str, Any]] = None
    profile: Optional[Dict[str, Any]] = None


class RenamePlanRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class LoadPlanRequest(BaseModel):
    selectedDay: Optional[int] = None


class SavedPlanSummary(BaseModel):
    planId: str
    name: str
    createdAt: datetime
    dayCount: int
    isActive: bool = False
    sourceRunId: Optional[str] = None


class SavedPlanResponse(SavedPlanSummary):
    mealPlan: List[Dict[str, Any]]
    nutritionalTargets: Optional[Dict[str, Any]] = None
    shoppingList: Optional[Dict[str, Any]] = None


class LoadPlanResponse(BaseModel):
    plan: SavedPlanResponse
    selectedDay: int
