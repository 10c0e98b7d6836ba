from __future__ import annotations

import pytest

from factories import default_days

from cheffy.errors import InvalidInput
from cheffy.schemas import IngredientResolution, MealPlan, NutritionalTargets
from cheffy.services.diagnostics import DiagnosticsRecorder, export_from_payload


def test_steps_are_recorded_and_forwarded():
    forwarded = []
    recorder = DiagnosticsRecorder("run_abc", listener=forwarded.append)

    recorder.step("Phase planning started", phase="planning", provider="openai:gpt-5.1")
    recorder.step("Provider failed", level="warning")

    steps = recorder.export("steps")
    assert [s["message"] for s in steps] == ["Phase planning started", "Provider failed"]
    assert steps[0]["phase"] == "planning"
    assert steps[0]["data"] == {"provider": "openai:gpt-5.1"}
    assert steps[1]["level"] == "WARNING"
    assert forwarded == steps


def test_failed_ingredient_history():
    recorder = DiagnosticsRecorder("run_abc")
    recorder.failed_ingredient(
        IngredientResolution(key="saffron", ingredient="Saffron threads", status="failed", reason="no catalog match")
    )
    [entry] = recorder.export("failed-ingredients")
    assert entry["originalIngredient"] == "Saffron threads"
    assert entry["error"] == "no catalog match"
    assert "timestamp" in entry


def test_macro_debug_compares_each_meal_to_its_share():
    recorder = DiagnosticsRecorder("run_abc")
    plan = MealPlan.model_validate({"days": default_days(1)})
    recorder.macro_debug(plan, NutritionalTargets(calories=2000, protein=150, fat=60, carbs=200), meals_per_day=2)

    entries = recorder.export("macro-debug")
    assert len(entries) == 2
    first = entries[0]
    assert (first["day"], first["mealIndex"]) == (1, 1)
    assert first["target"]["calories"] == 1000
    assert first["actual"]["calories"] == 600
    assert first["delta"]["calories"] == -400
    assert first["delta"]["protein"] == -35


def test_unknown_stream_is_rejected():
    with pytest.raises(InvalidInput):
        DiagnosticsRecorder("run_abc").export("everything")
    with pytest.raises(InvalidInput):
        export_from_payload({}, "everything")


def test_snapshot_round_trips_through_payload():
    recorder = DiagnosticsRecorder("run_abc")
    recorder.step("hello")
    payload = {"diagnostics": recorder.snapshot()}

    assert set(payload["diagnostics"]) == {"steps", "failedIngredients", "macroDebug"}
    assert export_from_payload(payload, "steps") == recorder.export("steps")
    assert export_from_payload(payload, "macro-debug") == []
    assert export_from_payload({"error": {"code": "x"}}, "failed-ingredients") == []
