from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from ..schemas import NutritionalTargets, Profile

ACTIVITY_MULTIPLIERS: Dict[str, float] = {
    "sedentary": 1.2,
    "light": 1.375,
    "moderate": 1.55,
    "active": 1.725,
    "veryActive": 1.9,
}

GOAL_ADJUSTMENTS: Dict[str, float] = {
    "maintain": 0.0,
    "cut_moderate": -0.15,
    "cut_aggressive": -0.25,
    "bulk_lean": 0.15,
    "bulk_aggressive": 0.25,
}

MIN_DAILY_CALORIES = 1200


@dataclass(frozen=True)
class MacroSplit:
    protein_g_per_kg: float
    fat_share: float  # fraction of calories from fat; carbs take the remainder


MACRO_SPLITS: Dict[str, MacroSplit] = {
    "balanced": MacroSplit(protein_g_per_kg=2.0, fat_share=0.25),
    "high_protein": MacroSplit(protein_g_per_kg=2.4, fat_share=0.25),
    "low_carb": MacroSplit(protein_g_per_kg=2.0, fat_share=0.40),
    "keto": MacroSplit(protein_g_per_kg=1.8, fat_share=0.70),
    "vegetarian": MacroSplit(protein_g_per_kg=1.8, fat_share=0.28),
    "vegan": MacroSplit(protein_g_per_kg=1.6, fat_share=0.30),
}


def _split_for(dietary: str | None) -> MacroSplit:
    key = (dietary or "balanced").strip().lower().replace("-", "_").replace(" ", "_")
    return MACRO_SPLITS.get(key, MACRO_SPLITS["balanced"])


def basal_metabolic_rate(profile: Profile) -> float:
    """Mifflin-St Jeor."""
    base = 10 * profile.weight + 6.25 * profile.height - 5 * profile.age
    return base + 5 if profile.sex == "male" else base - 161


def calculate_targets(profile: Profile) -> NutritionalTargets:
    tdee = basal_metabolic_rate(profile) * ACTIVITY_MULTIPLIERS.get(profile.activityLevel, 1.55)
    adjustment = GOAL_ADJUSTMENTS.get(profile.goal, 0.0)
    calories = max(MIN_DAILY_CALORIES, round(tdee * (1 + adjustment)))

    split = _split_for(profile.dietary)
    protein = round(profile.weight * split.protein_g_per_kg)
    fat = round(calories * split.fat_share / 9)
    carbs = max(0, round((calories - protein * 4 - fat * 9) / 4))
    return NutritionalTargets(calories=int(calories), protein=int(protein), fat=int(fat), carbs=int(carbs))
