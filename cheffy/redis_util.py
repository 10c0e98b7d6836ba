from __future__ import annotations

import redis.asyncio as redis

from .config import Settings, get_settings


def get_redis(settings: Settings | None = None) -> redis.Redis | None:
    url = (settings or get_settings()).redis_url
    if not url:
        return None
    return redis.from_url(url, decode_responses=True)
