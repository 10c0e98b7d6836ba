from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings

limiter = Limiter(key_func=get_remote_address, headers_enabled=False)


def run_start_limit() -> str:
    return get_settings().run_start_rate_limit
