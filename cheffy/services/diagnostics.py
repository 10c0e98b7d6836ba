"""Per-run diagnostic streams.

Three append-only streams are kept for each run: the orchestrator step log,
the failed-ingredient history and the macro-debug trace. Entries are mirrored
to the module logger but never influence control flow.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..errors import InvalidInput
from ..schemas import IngredientResolution, MealPlan, NutritionalTargets

logger = logging.getLogger(__name__)

STREAM_STEPS = "steps"
STREAM_FAILED_INGREDIENTS = "failed-ingredients"
STREAM_MACRO_DEBUG = "macro-debug"
STREAMS = (STREAM_STEPS, STREAM_FAILED_INGREDIENTS, STREAM_MACRO_DEBUG)

# keys used when the streams are embedded in a run payload
PAYLOAD_KEYS = {
    STREAM_STEPS: "steps",
    STREAM_FAILED_INGREDIENTS: "failedIngredients",
    STREAM_MACRO_DEBUG: "macroDebug",
}

MACROS = ("calories", "protein", "fat", "carbs")
SUBTOTAL_FIELDS = {
    "calories": "subtotal_kcal",
    "protein": "subtotal_protein",
    "fat": "subtotal_fat",
    "carbs": "subtotal_carbs",
}

EntryListener = Callable[[Dict[str, Any]], None]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DiagnosticsRecorder:
    def __init__(self, run_id: str, *, listener: Optional[EntryListener] = None) -> None:
        self.run_id = run_id
        self._listener = listener
        self._steps: List[Dict[str, Any]] = []
        self._failed: List[Dict[str, Any]] = []
        self._macro: List[Dict[str, Any]] = []

    def step(self, message: str, *, level: str = "INFO", phase: Optional[str] = None, **data: Any) -> None:
        entry: Dict[str, Any] = {"timestamp": _now(), "level": level.upper(), "message": message}
        if phase:
            entry["phase"] = phase
        if data:
            entry["data"] = data
        self._steps.append(entry)
        logger.log(getattr(logging, entry["level"], logging.INFO), message)
        if self._listener is not None:
            self._listener(entry)

    def failed_ingredient(self, resolution: IngredientResolution) -> None:
        entry = {
            "timestamp": _now(),
            "originalIngredient": resolution.ingredient,
            "key": resolution.key,
            "error": resolution.reason or "unresolved",
        }
        self._failed.append(entry)
        logger.warning("Ingredient unresolved: %s (%s)", resolution.ingredient, entry["error"])

    def macro_debug(self, meal_plan: MealPlan, targets: NutritionalTargets, meals_per_day: int) -> None:
        """Record per-meal target-versus-actual deltas for the generated plan."""
        share = max(1, meals_per_day)
        per_meal = {macro: getattr(targets, macro) / share for macro in MACROS}
        for day in meal_plan.days:
            for index, meal in enumerate(day.meals, start=1):
                actual = {macro: float(getattr(meal, SUBTOTAL_FIELDS[macro])) for macro in MACROS}
                self._macro.append(
                    {
                        "timestamp": _now(),
                        "day": day.day,
                        "mealIndex": index,
                        "meal": meal.name,
                        "target": {macro: round(per_meal[macro], 1) for macro in MACROS},
                        "actual": actual,
                        "delta": {macro: round(actual[macro] - per_meal[macro], 1) for macro in MACROS},
                    }
                )
        logger.debug("Macro debug recorded for %d meal(s)", len(self._macro))

    def export(self, stream: str) -> List[Dict[str, Any]]:
        if stream == STREAM_STEPS:
            return list(self._steps)
        if stream == STREAM_FAILED_INGREDIENTS:
            return list(self._failed)
        if stream == STREAM_MACRO_DEBUG:
            return list(self._macro)
        raise InvalidInput(f"unknown diagnostics stream: {stream}")

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        return {PAYLOAD_KEYS[stream]: self.export(stream) for stream in STREAMS}


def export_from_payload(payload: Dict[str, Any], stream: str) -> List[Dict[str, Any]]:
    """Read one stream back out of a persisted run payload."""
    if stream not in PAYLOAD_KEYS:
        raise InvalidInput(f"unknown diagnostics stream: {stream}")
    diagnostics = payload.get("diagnostics") or {}
    return list(diagnostics.get(PAYLOAD_KEYS[stream]) or [])
