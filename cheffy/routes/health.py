from __future__ import annotations

import os
from fastapi import APIRouter, Request
from ..config import get_settings


router = APIRouter()


@router.get("/health")
async def health(request: Request):
    s = get_settings()
    store = getattr(request.app.state, "run_store", None)
    if store is None:
        run_store = "unconfigured"
    else:
        run_store = "ok" if await store.ping() else "unreachable"
    return {
        "status": "ok",
        "service": s.app_name,
        "env": s.environment,
        "runStore": run_store,
        "pid": os.getpid(),
    }
