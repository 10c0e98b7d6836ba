from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Dict, Optional, Protocol, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..config import Settings
from ..errors import StorageUnavailable
from ..redis_util import get_redis

logger = logging.getLogger(__name__)


class RunStore(Protocol):
    """Get/set of one JSON record per run key, each with a finite expiry."""

    async def get(self, run_id: str) -> Optional[Dict[str, Any]]: ...

    async def set(self, run_id: str, record: Dict[str, Any]) -> None: ...

    async def ping(self) -> bool: ...


class RedisRunStore:
    def __init__(self, client: Redis, *, key_prefix: str, ttl_seconds: int) -> None:
        self._client = client
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds

    def key(self, run_id: str) -> str:
        return f"{self.key_prefix}{run_id}"

    async def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self._client.get(self.key(run_id))
        except RedisError as exc:
            raise StorageUnavailable(f"run store unreachable: {exc}") from exc
        if not raw:
            return None
        return json.loads(raw)

    async def set(self, run_id: str, record: Dict[str, Any]) -> None:
        try:
            await self._client.set(self.key(run_id), json.dumps(record), ex=self.ttl_seconds)
        except RedisError as exc:
            raise StorageUnavailable(f"run store unreachable: {exc}") from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError:
            logger.warning("Run store ping failed", exc_info=True)
            return False

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryRunStore:
    """Process-local store for development and tests; expiry is checked on read."""

    def __init__(self, *, ttl_seconds: int = 3600) -> None:
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._records: Dict[str, Tuple[float, str]] = {}

    async def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._records.get(run_id)
            if entry is None:
                return None
            expires_at, raw = entry
            if expires_at <= time.monotonic():
                del self._records[run_id]
                return None
        return json.loads(raw)

    async def set(self, run_id: str, record: Dict[str, Any]) -> None:
        # stored serialised, so callers never share mutable state with the store
        raw = json.dumps(record)
        with self._lock:
            self._records[run_id] = (time.monotonic() + self.ttl_seconds, raw)

    async def ping(self) -> bool:
        return True


def build_run_store(settings: Settings) -> Optional[RunStore]:
    client = get_redis(settings)
    if client is not None:
        return RedisRunStore(client, key_prefix=settings.run_key_prefix, ttl_seconds=settings.run_ttl_seconds)
    if settings.run_store_memory_fallback:
        logger.warning("REDIS_URL not set; run records are kept in process memory")
        return InMemoryRunStore(ttl_seconds=settings.run_ttl_seconds)
    return None
