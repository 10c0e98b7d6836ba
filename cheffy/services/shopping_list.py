from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..schemas import IngredientResolution, MealPlan, ShoppingList, ShoppingListItem
from .ingredient_resolver import WATER_LABELS, ResolutionSet
from .ingredients import CATEGORIES, categorize, format_quantity, normalize_ingredient_key, to_canonical

logger = logging.getLogger(__name__)


@dataclass
class _Requirement:
    key: str
    unit: str
    name: str
    declared_category: Optional[str]
    quantity: float = 0.0
    occurrences: int = 0


def _item_id(key: str, unit: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", f"{key} {unit}").strip("-")


def _merge_requirements(meal_plan: MealPlan) -> Dict[Tuple[str, str], _Requirement]:
    merged: Dict[Tuple[str, str], _Requirement] = {}
    for day in meal_plan.days:
        for meal in day.meals:
            for line in meal.ingredients:
                key = normalize_ingredient_key(line.name)
                if not key or key in WATER_LABELS:
                    continue
                measurement = to_canonical(line.quantity, line.unit)
                requirement = merged.setdefault(
                    (key, measurement.unit),
                    _Requirement(
                        key=key,
                        unit=measurement.unit,
                        name=line.name.strip(),
                        declared_category=line.category,
                    ),
                )
                requirement.quantity += measurement.amount
                requirement.occurrences += 1
    return merged


def _price_item(requirement: _Requirement, resolution: Optional[IngredientResolution]) -> ShoppingListItem:
    category = (
        resolution.category
        if resolution is not None
        else categorize(requirement.key, requirement.declared_category)
    )
    item = ShoppingListItem(
        id=_item_id(requirement.key, requirement.unit),
        key=requirement.key,
        name=resolution.ingredient if resolution is not None else requirement.name,
        quantity=format_quantity(requirement.quantity),
        unit=requirement.unit,
        category=category,
        occurrences=requirement.occurrences,
    )
    if resolution is None or resolution.status != "matched" or resolution.product is None:
        # still listed so the shopper can substitute by hand
        item.unresolved = True
        item.reason = resolution.reason if resolution is not None else "not resolved"
        return item

    product = resolution.product
    item.product = product
    if product.packUnit == requirement.unit and product.packAmount:
        item.unitPrice = product.unitPrice
        item.billedQuantity = item.quantity
    else:
        item.unitPrice = product.price
        item.billedQuantity = 1.0
    item.cost = round(item.unitPrice * item.billedQuantity, 2)
    return item


def aggregate_shopping_list(meal_plan: MealPlan, resolutions: ResolutionSet) -> ShoppingList:
    """Merge every plan line by ingredient and canonical unit, then price it."""
    requirements = _merge_requirements(meal_plan)
    items = [
        _price_item(requirement, resolutions.resolutions.get(requirement.key))
        for requirement in requirements.values()
    ]
    order = {category: index for index, category in enumerate(CATEGORIES)}
    items.sort(key=lambda item: (order.get(item.category, len(order)), item.key, item.unit))

    categories: Dict[str, List[str]] = {}
    for item in items:
        categories.setdefault(item.category, []).append(item.id)

    total = round(sum(item.cost for item in items), 2)
    unresolved = sum(1 for item in items if item.unresolved)
    logger.info("Shopping list built items=%d unresolved=%d total=%.2f", len(items), unresolved, total)
    return ShoppingList(items=items, categories=categories, totalCost=total, unresolvedCount=unresolved)
