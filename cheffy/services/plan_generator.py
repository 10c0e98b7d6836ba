from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..errors import StructureInvalid
from ..schemas import MealPlan, NutritionalTargets, Profile
from .providers import GenerationProvider, Prompt, ProviderGateway, parse_json_output

logger = logging.getLogger(__name__)

MEAL_TYPES_BY_COUNT: Dict[int, List[str]] = {
    1: ["dinner"],
    2: ["lunch", "dinner"],
    3: ["breakfast", "lunch", "dinner"],
    4: ["breakfast", "lunch", "snack", "dinner"],
    5: ["breakfast", "snack", "lunch", "snack", "dinner"],
    6: ["breakfast", "snack", "lunch", "snack", "dinner", "snack"],
}

VARIETY_HINTS = {
    "low": "Repeat meals freely across days to keep shopping simple (batch cooking is welcome).",
    "balanced": "Repeat at most one meal per day type across the plan.",
    "high": "Do not repeat any meal across the plan.",
}

COST_HINTS = {
    "best_value": "Favour cheap staple ingredients and reuse ingredients across meals.",
    "balanced": "Balance cost and variety.",
    "premium": "Cost is not a concern; favour quality ingredients.",
}


@dataclass
class GeneratedPlan:
    meal_plan: MealPlan
    provider: str
    failed_attempts: List[Dict[str, Any]] = field(default_factory=list)


def build_plan_prompt(profile: Profile, targets: NutritionalTargets) -> Prompt:
    meal_types = MEAL_TYPES_BY_COUNT.get(profile.eatingOccasions) or ["meal"] * profile.eatingOccasions
    schema = {
        "days": [
            {
                "day": "integer, 1-based",
                "meals": [
                    {
                        "name": "string",
                        "type": "breakfast | lunch | dinner | snack",
                        "description": "one sentence",
                        "ingredients": [
                            {
                                "name": "plain grocery item, no brand",
                                "quantity": "number",
                                "unit": "g | ml | each",
                                "category": "Produce | Meat & Seafood | Dairy & Eggs | Bakery | Pantry | Frozen | Drinks",
                            }
                        ],
                        "subtotal_kcal": "number >= 0",
                        "subtotal_protein": "grams >= 0",
                        "subtotal_fat": "grams >= 0",
                        "subtotal_carbs": "grams >= 0",
                    }
                ],
            }
        ]
    }
    system = (
        "You are a meal-planning nutritionist. You write realistic home-cooked meal plans whose per-meal "
        "macro subtotals add up to the daily targets, using ingredients a shopper can buy at a supermarket. "
        "Respond with a single JSON object and nothing else."
    )
    context = {
        "days": profile.days,
        "meals_per_day": profile.eatingOccasions,
        "meal_order": meal_types,
        "daily_targets": targets.model_dump(),
        "dietary_preference": profile.dietary,
        "store": profile.store,
        "cuisine_notes": profile.cuisine or "",
    }
    user = (
        f"Plan {profile.days} day(s) with exactly {profile.eatingOccasions} meal(s) per day.\n"
        f"{VARIETY_HINTS[profile.variety]}\n"
        f"{COST_HINTS[profile.costPriority]}\n"
        "Every meal needs at least one ingredient with a raw, as-purchased quantity.\n"
        f"Context:\n{json.dumps(context, ensure_ascii=False, indent=2)}\n"
        f"Return JSON matching this schema:\n{json.dumps(schema, ensure_ascii=False, indent=2)}"
    )
    return Prompt(system=system, user=user)


def parse_meal_plan(text: str, profile: Profile) -> MealPlan:
    """Decode and validate one model answer; any shape problem raises StructureInvalid."""
    payload = parse_json_output(text)
    if isinstance(payload, list):
        payload = {"days": payload}
    elif isinstance(payload, dict) and "days" not in payload:
        payload = {"days": payload.get("mealPlan") or payload.get("meal_plan")}
    try:
        plan = MealPlan.model_validate(payload)
    except ValidationError as exc:
        raise StructureInvalid(f"meal plan failed validation: {exc.error_count()} error(s)") from exc

    if plan.day_count != profile.days:
        raise StructureInvalid(f"expected {profile.days} day(s), got {plan.day_count}")
    for index, day in enumerate(plan.days, start=1):
        if len(day.meals) != profile.eatingOccasions:
            raise StructureInvalid(
                f"day {index} has {len(day.meals)} meal(s), expected {profile.eatingOccasions}"
            )
        day.day = index
    return plan


async def generate_plan(
    profile: Profile,
    targets: NutritionalTargets,
    *,
    gateway: ProviderGateway,
    primary: GenerationProvider,
    secondary: Optional[GenerationProvider],
) -> GeneratedPlan:
    prompt = build_plan_prompt(profile, targets)
    result = await gateway.generate(
        prompt,
        primary,
        secondary,
        parse=lambda text: parse_meal_plan(text, profile),
    )
    logger.info(
        "Meal plan generated provider=%s days=%d failed_attempts=%d",
        result.source,
        result.value.day_count,
        len(result.failures),
    )
    return GeneratedPlan(
        meal_plan=result.value,
        provider=result.source or primary.name,
        failed_attempts=result.failure_details(),
    )
