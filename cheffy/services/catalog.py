"""Store catalog sources used during the market phase.

Two sources share one small interface (``search`` and ``nutrition``): the
local JSON catalog file and an optional remote price-search API. The
``FallbackCatalog`` asks them in order through :class:`FallbackChain`, so an
unreachable or empty remote search degrades to the local file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

import httpx

from ..config import Settings
from .fallback import Attempt, FallbackChain
from .ingredients import is_banned_product, normalize_ingredient_key, singularize

logger = logging.getLogger(__name__)


class CatalogError(RuntimeError):
    """A catalog source could not answer."""


@dataclass(frozen=True)
class CatalogProduct:
    product_id: str
    name: str
    price: float
    pack_size: Optional[str] = None
    store: Optional[str] = None
    url: Optional[str] = None
    category: Optional[str] = None
    nutrition: Optional[Dict[str, Any]] = field(default=None, compare=False, hash=False)


class CatalogSource(Protocol):
    name: str

    async def search(self, query: str, store: Optional[str]) -> List[CatalogProduct]: ...

    async def nutrition(self, product_id: str) -> Optional[Dict[str, Any]]: ...


def product_from_record(record: Dict[str, Any]) -> Optional[CatalogProduct]:
    product_id = record.get("productId") or record.get("product_id") or record.get("sku")
    name = record.get("name") or record.get("productName") or record.get("product_name")
    if product_id is None or not name:
        return None
    raw_price = record.get("price")
    if raw_price is None:
        raw_price = record.get("salePrice") or record.get("sale_price")
    try:
        price = float(raw_price)
    except (TypeError, ValueError):
        price = 0.0
    nutrition = record.get("nutrition")
    return CatalogProduct(
        product_id=str(product_id),
        name=str(name),
        price=price,
        pack_size=record.get("packSize") or record.get("pack_size") or record.get("size"),
        store=record.get("store"),
        url=record.get("url"),
        category=record.get("category"),
        nutrition=nutrition if isinstance(nutrition, dict) else None,
    )


def rank_candidates(products: Sequence[CatalogProduct]) -> List[CatalogProduct]:
    """Drop non-food and unpriced products, then order cheapest first.

    Ties on price fall back to the product id so ranking never depends on the
    order a source happened to return.
    """
    eligible = [p for p in products if p.price > 0 and not is_banned_product(p.name)]
    return sorted(eligible, key=lambda p: (p.price, p.product_id))


def _matches(query_key: str, product: CatalogProduct) -> bool:
    product_key = normalize_ingredient_key(product.name) or ""
    product_words = {singularize(word) for word in product_key.split()}
    return all(word in product_words for word in query_key.split())


class JsonFileCatalog:
    """Catalog backed by a JSON file, reloaded when its mtime changes."""

    name = "local-catalog"

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._products: Optional[List[CatalogProduct]] = None
        self._by_id: Dict[str, CatalogProduct] = {}
        self._mtime: float = 0.0

    def _load(self) -> List[CatalogProduct]:
        try:
            stat = os.stat(self.path)
        except OSError:
            return []
        with self._lock:
            if self._products is not None and self._mtime >= stat.st_mtime:
                return self._products
            with open(self.path, "r", encoding="utf-8") as handle:
                payload = json.load(handle)
            entries: List[Dict[str, Any]] = []
            if isinstance(payload, list):
                entries = [entry for entry in payload if isinstance(entry, dict)]
            elif isinstance(payload, dict):
                if isinstance(payload.get("items"), list):
                    entries = [entry for entry in payload["items"] if isinstance(entry, dict)]
                else:
                    entries = [entry for entry in payload.values() if isinstance(entry, dict)]
            products = [p for p in (product_from_record(entry) for entry in entries) if p is not None]
            self._products = products
            self._by_id = {p.product_id: p for p in products}
            self._mtime = stat.st_mtime
            logger.info("Loaded %d catalog products from %s", len(products), self.path)
            return products

    async def search(self, query: str, store: Optional[str]) -> List[CatalogProduct]:
        query_key = normalize_ingredient_key(query)
        if not query_key:
            return []
        products = await asyncio.to_thread(self._load)
        wanted_store = (store or "").lower()
        return [
            p
            for p in products
            if _matches(query_key, p) and (not wanted_store or not p.store or p.store.lower() == wanted_store)
        ]

    async def nutrition(self, product_id: str) -> Optional[Dict[str, Any]]:
        await asyncio.to_thread(self._load)
        product = self._by_id.get(product_id)
        return product.nutrition if product else None


class PriceSearchCatalog:
    """Remote price-search API: ``GET /search`` and ``GET /products/{id}/nutrition``."""

    name = "price-search"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {"Accept": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._transport = transport

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                resp = await client.get(path, params=params)
        except httpx.HTTPError as exc:
            raise CatalogError(f"Unable to reach price search: {exc}") from exc
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise CatalogError(f"Price search returned HTTP {resp.status_code}")
        return resp.json()

    async def search(self, query: str, store: Optional[str]) -> List[CatalogProduct]:
        params = {"q": query}
        if store:
            params["store"] = store
        payload = await self._get("/search", params=params) or {}
        records = payload.get("products") if isinstance(payload, dict) else payload
        products = [product_from_record(r) for r in records or [] if isinstance(r, dict)]
        return [p for p in products if p is not None]

    async def nutrition(self, product_id: str) -> Optional[Dict[str, Any]]:
        payload = await self._get(f"/products/{product_id}/nutrition")
        return payload if isinstance(payload, dict) and payload else None


def _require_candidates(products: List[CatalogProduct]) -> List[CatalogProduct]:
    if not products:
        raise LookupError("no candidates")
    return products


def _require_value(value: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not value:
        raise LookupError("no nutrition facts")
    return value


class FallbackCatalog:
    name = "catalog"

    def __init__(self, sources: Sequence[CatalogSource], *, timeout: Optional[float] = None) -> None:
        if not sources:
            raise ValueError("at least one catalog source is required")
        self.sources = list(sources)
        self.timeout = timeout

    def _chain(self, make_call: Callable[[CatalogSource], Callable[[], Awaitable[Any]]], label: str) -> FallbackChain:
        return FallbackChain(
            [Attempt(source.name, make_call(source), timeout=self.timeout) for source in self.sources],
            label=label,
        )

    async def search(self, query: str, store: Optional[str]) -> List[CatalogProduct]:
        chain = self._chain(lambda source: lambda: source.search(query, store), label=f"catalog-search[{query}]")
        result = await chain.run(validate=_require_candidates)
        return result.value if result.ok else []

    async def nutrition(self, product_id: str) -> Optional[Dict[str, Any]]:
        chain = self._chain(lambda source: lambda: source.nutrition(product_id), label=f"nutrition[{product_id}]")
        result = await chain.run(validate=_require_value)
        return result.value if result.ok else None


class NutritionCache:
    """One nutrition lookup per product id for the life of a run.

    Concurrent callers for the same id share the in-flight task.
    """

    def __init__(self, loader: Callable[[str], Awaitable[Optional[Dict[str, Any]]]]) -> None:
        self._loader = loader
        self._tasks: Dict[str, asyncio.Task] = {}
        self.hits = 0
        self.misses = 0

    async def get(self, product_id: str) -> Optional[Dict[str, Any]]:
        task = self._tasks.get(product_id)
        if task is None:
            self.misses += 1
            task = asyncio.ensure_future(self._loader(product_id))
            self._tasks[product_id] = task
        else:
            self.hits += 1
        return await asyncio.shield(task)


def build_catalog(settings: Settings) -> FallbackCatalog:
    sources: List[CatalogSource] = []
    if settings.price_search_url:
        sources.append(
            PriceSearchCatalog(
                settings.price_search_url,
                api_key=settings.price_search_api_key,
                timeout=settings.price_search_timeout_seconds,
            )
        )
    sources.append(JsonFileCatalog(settings.catalog_path or "resolver/catalog.json"))
    return FallbackCatalog(sources)
