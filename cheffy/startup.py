from __future__ import annotations

import logging
from typing import Iterable, Tuple

from .config import Settings

logger = logging.getLogger(__name__)


def _collect_missing(settings: Settings, pairs: Iterable[Tuple[str, str]]) -> list[str]:
    missing: list[str] = []
    for attr, label in pairs:
        value = getattr(settings, attr, None)
        if value in (None, "", [], {}):
            missing.append(label)
    return missing


def validate_settings(settings: Settings) -> None:
    """Fail fast when mandatory secrets/config values are missing for non-dev envs."""
    environment = (settings.environment or "dev").lower()

    recommended = [
        ("redis_url", "REDIS_URL"),
        ("openai_api_key", "OPENAI_API_KEY"),
        ("gemini_api_key", "GEMINI_API_KEY"),
        ("database_url", "DATABASE_URL"),
    ]
    if environment == "dev":
        dev_missing = _collect_missing(settings, recommended)
        if dev_missing:
            logger.warning(
                "Running in dev without recommended settings; some features may be disabled: %s",
                ", ".join(dev_missing),
            )
        return

    required_pairs: list[Tuple[str, str]] = [
        ("redis_url", "REDIS_URL"),
        ("openai_api_key", "OPENAI_API_KEY"),
        ("database_url", "DATABASE_URL"),
    ]
    if not settings.auth_disable_verification:
        required_pairs.append(("auth_jwt_secret", "AUTH_JWT_SECRET"))

    missing = _collect_missing(settings, required_pairs)
    if missing:
        raise RuntimeError(
            f"Missing required configuration for environment '{environment}': {', '.join(sorted(missing))}"
        )
    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY not set; plan generation has no fallback provider")
