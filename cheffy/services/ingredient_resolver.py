from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..errors import ProductMatchFailure
from ..schemas import IngredientResolution, MealPlan, ProductOption
from .catalog import CatalogProduct, FallbackCatalog, NutritionCache, rank_candidates
from .ingredients import categorize, normalize_ingredient_key, parse_pack_size

logger = logging.getLogger(__name__)

WATER_LABELS = {
    "water",
    "warm water",
    "cold water",
    "ice water",
    "hot water",
    "boiling water",
    "tap water",
    "filtered water",
}

ResultCallback = Callable[[IngredientResolution], Awaitable[None]]


@dataclass
class IngredientRequest:
    key: str
    name: str
    declared_category: Optional[str] = None
    occurrences: int = 0


@dataclass
class ResolutionSet:
    resolutions: Dict[str, IngredientResolution] = field(default_factory=dict)

    def ordered(self) -> List[IngredientResolution]:
        return [self.resolutions[key] for key in sorted(self.resolutions)]

    @property
    def failed(self) -> List[IngredientResolution]:
        return [r for r in self.ordered() if r.status == "failed"]

    @property
    def matched(self) -> List[IngredientResolution]:
        return [r for r in self.ordered() if r.status == "matched"]


def collect_ingredients(meal_plan: MealPlan) -> Dict[str, IngredientRequest]:
    """Unique ingredients across the whole plan, keyed by normalised name."""
    requests: Dict[str, IngredientRequest] = {}
    for day in meal_plan.days:
        for meal in day.meals:
            for line in meal.ingredients:
                key = normalize_ingredient_key(line.name)
                if not key or key in WATER_LABELS:
                    continue
                request = requests.setdefault(
                    key,
                    IngredientRequest(key=key, name=line.name.strip(), declared_category=line.category),
                )
                if request.declared_category is None and line.category:
                    request.declared_category = line.category
                request.occurrences += 1
    return requests


def build_product_option(
    product: CatalogProduct,
    *,
    is_cheapest: bool = False,
    nutrition: Optional[Dict[str, Any]] = None,
) -> ProductOption:
    pack = parse_pack_size(product.pack_size) or parse_pack_size(product.name)
    if pack is not None and pack.amount > 0:
        unit_price = product.price / pack.amount
        pack_amount: Optional[float] = pack.amount
        pack_unit: Optional[str] = pack.unit
    else:
        unit_price = product.price
        pack_amount = None
        pack_unit = None
    return ProductOption(
        productId=product.product_id,
        name=product.name,
        price=round(product.price, 2),
        packSize=product.pack_size,
        packAmount=pack_amount,
        packUnit=pack_unit,
        unitPrice=unit_price,
        url=product.url,
        isCheapest=is_cheapest,
        nutrition=nutrition if nutrition is not None else product.nutrition,
    )


class IngredientResolver:
    """Resolves unique ingredients against a catalog with a bounded worker pool."""

    def __init__(
        self,
        catalog: FallbackCatalog,
        *,
        store: Optional[str],
        max_workers: int = 6,
        max_substitutes: int = 5,
        nutrition_cache: Optional[NutritionCache] = None,
    ) -> None:
        self.catalog = catalog
        self.store = store
        self.max_workers = max(1, max_workers)
        self.max_substitutes = max(0, max_substitutes)
        self.nutrition_cache = nutrition_cache or NutritionCache(catalog.nutrition)

    async def resolve(
        self,
        meal_plan: MealPlan,
        *,
        on_result: Optional[ResultCallback] = None,
    ) -> ResolutionSet:
        requests = collect_ingredients(meal_plan)
        results = ResolutionSet()
        if not requests:
            return results

        queue: asyncio.Queue[IngredientRequest] = asyncio.Queue()
        for key in sorted(requests):
            queue.put_nowait(requests[key])

        async def worker() -> None:
            while True:
                try:
                    request = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                resolution = await self._resolve_one(request)
                results.resolutions[request.key] = resolution
                if on_result is not None:
                    await on_result(resolution)

        workers = min(self.max_workers, len(requests))
        await asyncio.gather(*(worker() for _ in range(workers)))
        logger.info(
            "Resolved %d ingredient(s): matched=%d failed=%d nutrition_cache_hits=%d",
            len(results.resolutions),
            len(results.matched),
            len(results.failed),
            self.nutrition_cache.hits,
        )
        return results

    async def _resolve_one(self, request: IngredientRequest) -> IngredientResolution:
        category = categorize(request.key, request.declared_category)
        try:
            return await self._match(request, category)
        except ProductMatchFailure as exc:
            logger.warning("No product for %s: %s", request.key, exc.reason)
            reason = exc.reason
        except Exception as exc:
            logger.exception("Ingredient lookup failed for %s", request.key)
            reason = f"lookup error: {exc}"
        return IngredientResolution(
            key=request.key,
            ingredient=request.name,
            status="failed",
            reason=reason,
            category=category,
            store=self.store,
        )

    async def _match(self, request: IngredientRequest, category: str) -> IngredientResolution:
        candidates = await self.catalog.search(request.name, self.store)
        ranked = rank_candidates(candidates)
        if not ranked:
            reason = "no catalog match" if not candidates else "no eligible priced product"
            raise ProductMatchFailure(request.name, reason)

        best = ranked[0]
        nutrition = await self.nutrition_cache.get(best.product_id)
        product = build_product_option(best, is_cheapest=True, nutrition=nutrition)
        substitutes = [build_product_option(p) for p in ranked[1 : 1 + self.max_substitutes]]
        return IngredientResolution(
            key=request.key,
            ingredient=request.name,
            status="matched",
            category=category,
            store=best.store or self.store,
            product=product,
            substitutes=substitutes,
        )
