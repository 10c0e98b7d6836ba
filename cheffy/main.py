from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from .config import Settings, get_settings
from .db import init_engine
from .observability import configure_logging, init_sentry
from .startup import validate_settings
from .routes import health, plan, plans
from .ratelimit import limiter
from .services.run_coordinator import build_run_coordinator
from .services.run_events import RunEventBroker
from .services.run_store import build_run_store
from slowapi.errors import RateLimitExceeded
from slowapi import _rate_limit_exceeded_handler


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Frame-Options", "DENY")
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is not None:
        await coordinator.shutdown()
    store = getattr(app.state, "run_store", None)
    close = getattr(store, "close", None)
    if close is not None:
        await close()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    s = settings or get_settings()
    configure_logging(json_logs=s.log_json, level=s.log_level)
    init_sentry(s)
    validate_settings(s)
    app = FastAPI(title=s.app_name, lifespan=lifespan)

    # Initialize DB engine if configured
    init_engine(s.database_url)

    # Run store, push channel and the coordinator that owns both
    app.state.run_store = build_run_store(s)
    app.state.event_broker = RunEventBroker(queue_size=s.event_queue_size)
    app.state.coordinator = (
        build_run_coordinator(s, app.state.run_store, app.state.event_broker)
        if app.state.run_store is not None
        else None
    )

    # CORS
    origins: List[str] = s.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Security headers
    app.add_middleware(SecurityHeadersMiddleware)
    # Compression
    app.add_middleware(GZipMiddleware, minimum_size=1024)

    # Routers
    prefix = "/v1"
    app.include_router(health.router, prefix=prefix)
    app.include_router(plan.router, prefix=prefix)
    app.include_router(plans.router, prefix=prefix)

    # Rate limit handling
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Metrics
    Instrumentator().instrument(app).expose(app, include_in_schema=False)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run("cheffy.main:app", host="0.0.0.0", port=port, reload=False)
