from __future__ import annotations

from factories import make_meal

from cheffy.schemas import IngredientResolution, MealPlan
from cheffy.services.catalog import CatalogProduct
from cheffy.services.ingredient_resolver import ResolutionSet, build_product_option
from cheffy.services.shopping_list import aggregate_shopping_list


def _plan(*ingredient_lists):
    meals = [make_meal(f"Meal {i}", ingredients) for i, ingredients in enumerate(ingredient_lists, start=1)]
    return MealPlan.model_validate({"days": [{"day": 1, "meals": meals}]})


def _matched(key, name, product, category="Other"):
    return IngredientResolution(
        key=key,
        ingredient=name,
        status="matched",
        category=category,
        product=build_product_option(product, is_cheapest=True),
    )


def test_same_ingredient_and_unit_merges_and_prices_by_unit():
    plan = _plan(
        [{"name": "Chicken breast", "quantity": 200, "unit": "g"}],
        [{"name": "chicken breasts", "quantity": 200, "unit": "g"}],
    )
    resolutions = ResolutionSet(
        {
            "chicken breast": _matched(
                "chicken breast",
                "Chicken breast",
                CatalogProduct("chk-1", "Chicken Breast Fillets", 100.0, pack_size="1kg"),
                category="Meat & Seafood",
            )
        }
    )

    shopping = aggregate_shopping_list(plan, resolutions)

    assert len(shopping.items) == 1
    item = shopping.items[0]
    assert item.quantity == 400
    assert item.unit == "g"
    assert item.occurrences == 2
    assert item.cost == 40.0
    assert shopping.totalCost == 40.0
    assert shopping.categories == {"Meat & Seafood": [item.id]}


def test_weight_units_are_canonicalised_before_merging():
    plan = _plan(
        [{"name": "Basmati rice", "quantity": 0.5, "unit": "kg"}],
        [{"name": "Basmati rice", "quantity": 200, "unit": "grams"}],
    )
    shopping = aggregate_shopping_list(plan, ResolutionSet())
    assert [(i.quantity, i.unit) for i in shopping.items] == [(700, "g")]


def test_different_units_stay_separate_lines():
    plan = _plan(
        [{"name": "Eggs", "quantity": 2, "unit": "each"}],
        [{"name": "Eggs", "quantity": 100, "unit": "g"}],
    )
    shopping = aggregate_shopping_list(plan, ResolutionSet())
    assert sorted((i.unit, i.quantity) for i in shopping.items) == [("each", 2), ("g", 100)]


def test_pack_unit_mismatch_bills_one_pack():
    plan = _plan([{"name": "Eggs", "quantity": 120, "unit": "g"}])
    resolutions = ResolutionSet(
        {"egg": _matched("egg", "Eggs", CatalogProduct("egg-6", "Free Range Eggs", 32.99, pack_size="6s"))}
    )
    item = aggregate_shopping_list(plan, resolutions).items[0]

    assert item.billedQuantity == 1.0
    assert item.cost == 32.99


def test_unresolved_items_are_listed_without_cost():
    plan = _plan(
        [{"name": "Basmati rice", "quantity": 100, "unit": "g"}],
        [{"name": "Dragonfruit powder", "quantity": 10, "unit": "g"}, {"name": "Water", "quantity": 500, "unit": "ml"}],
    )
    resolutions = ResolutionSet(
        {
            "basmati rice": _matched(
                "basmati rice",
                "Basmati rice",
                CatalogProduct("rice-1", "Basmati Rice", 45.0, pack_size="1kg"),
                category="Pantry",
            ),
            "dragonfruit powder": IngredientResolution(
                key="dragonfruit powder",
                ingredient="Dragonfruit powder",
                status="failed",
                reason="no catalog match",
            ),
        }
    )

    shopping = aggregate_shopping_list(plan, resolutions)

    assert [i.key for i in shopping.items] == ["basmati rice", "dragonfruit powder"]
    unresolved = shopping.items[1]
    assert unresolved.unresolved
    assert unresolved.cost == 0.0
    assert unresolved.reason == "no catalog match"
    assert shopping.unresolvedCount == 1
    assert shopping.totalCost == 4.5


def test_items_are_ordered_by_category():
    plan = _plan(
        [
            {"name": "Basmati rice", "quantity": 100, "unit": "g"},
            {"name": "Banana", "quantity": 2, "unit": "each"},
            {"name": "Milk", "quantity": 250, "unit": "ml"},
        ]
    )
    shopping = aggregate_shopping_list(plan, ResolutionSet())
    assert [i.category for i in shopping.items] == ["Produce", "Dairy & Eggs", "Pantry"]
    assert list(shopping.categories) == ["Produce", "Dairy & Eggs", "Pantry"]
