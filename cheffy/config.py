from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List


class Settings(BaseSettings):
    # Core
    app_name: str = Field(default="cheffy-server")
    environment: str = Field(default="dev")  # dev|staging|prod
    log_json: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    # Auth (HS256 bearer tokens issued by the web front end)
    auth_jwt_secret: str | None = Field(default=None)
    auth_audience: str | None = Field(default=None)
    auth_disable_verification: bool = Field(default=False)

    # Run store
    redis_url: str | None = Field(default=None)
    run_key_prefix: str = Field(default="cheffy:run:")
    run_ttl_seconds: int = Field(default=3600, ge=60)
    run_store_memory_fallback: bool = Field(default=True)

    # Saved plans
    database_url: str | None = Field(default=None)

    # Catalog / market run
    catalog_path: str | None = Field(default="resolver/catalog.json")
    default_store: str = Field(default="Woolworths")
    price_search_url: str | None = Field(default=None)
    price_search_api_key: str | None = Field(default=None)
    price_search_timeout_seconds: float = Field(default=8.0, gt=0)
    market_max_workers: int = Field(default=6, ge=1, le=32)
    market_max_substitutes: int = Field(default=5, ge=0)

    # Generation providers
    openai_api_key: str | None = Field(default=None)
    gemini_api_key: str | None = Field(default=None)
    primary_model: str = Field(default="gpt-5.1")
    fallback_model: str = Field(default="gemini-2.0-flash")
    provider_timeout_seconds: float = Field(default=90.0, ge=5, le=300)
    plan_max_output_tokens: int = Field(default=8000)
    plan_reasoning_effort: str = Field(default="medium")
    plan_temperature: float = Field(default=0.3)

    # Push channel
    event_queue_size: int = Field(default=256, ge=1)
    event_keepalive_seconds: float = Field(default=15.0, gt=0)

    # API
    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    run_start_rate_limit: str = Field(default="5/minute")

    # Observability
    sentry_dsn: str | None = Field(default=None)
    sentry_traces_sample_rate: float = Field(default=0.0)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def _csv_to_list(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
