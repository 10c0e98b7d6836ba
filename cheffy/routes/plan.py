import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from ..config import get_settings
from ..errors import InvalidInput, StorageUnavailable
from ..ratelimit import limiter, run_start_limit
from ..schemas import NutritionalTargets, Profile, StartRunResponse
from ..services.diagnostics import STREAMS, export_from_payload
from ..services.run_coordinator import RunCoordinator
from ..services.run_events import (
    EVENT_COMPLETE,
    EVENT_ERROR,
    EVENT_PHASE_START,
    RunEventBroker,
    Subscription,
    format_sse,
)
from ..services.run_state import (
    PHASE_PROGRESS,
    Complete,
    Failed,
    Phase,
    Running,
    RunState,
    Unknown,
    state_from_record,
)
from ..services.run_status import read_status, validate_run_id
from ..services.run_store import RunStore
from ..services.targets import calculate_targets

router = APIRouter(prefix="/plan", tags=["plan"])

logger = logging.getLogger(__name__)


def get_run_store(request: Request) -> Optional[RunStore]:
    return getattr(request.app.state, "run_store", None)


def get_broker(request: Request) -> RunEventBroker:
    return request.app.state.event_broker


def get_coordinator(request: Request) -> RunCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Run store is not configured")
    return coordinator


@router.post("/runs", status_code=status.HTTP_202_ACCEPTED, response_model=StartRunResponse)
@limiter.limit(run_start_limit)
async def start_plan_run(
    request: Request,
    profile: Profile,
    coordinator: RunCoordinator = Depends(get_coordinator),
) -> StartRunResponse:
    try:
        run_id = await coordinator.start_run(profile)
    except StorageUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    coordinator.schedule(run_id, profile)
    return StartRunResponse(runId=run_id, status="running", phase=Phase.TARGETS.value)


@router.get("/status")
async def plan_status(
    runId: Optional[str] = Query(default=None),
    store: Optional[RunStore] = Depends(get_run_store),
):
    try:
        body = await read_status(store, runId)
    except InvalidInput as exc:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid runId", "message": str(exc)},
        )
    except StorageUnavailable as exc:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": "Storage unavailable", "message": str(exc), "status": "unknown"},
        )
    except Exception:
        logger.exception("Plan status lookup failed run_id=%s", runId)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error", "message": "Failed to retrieve plan status"},
        )
    return JSONResponse(content=body)


def _terminal_frame(run_id: str, state: Optional[RunState]) -> Optional[str]:
    if isinstance(state, Complete):
        return format_sse(EVENT_COMPLETE, {"runId": run_id, "result": state.payload})
    if isinstance(state, Failed):
        return format_sse(EVENT_ERROR, {"runId": run_id, "error": state.error})
    return None


async def _stored_state(store: RunStore, run_id: str) -> Optional[RunState]:
    try:
        return state_from_record(await store.get(run_id))
    except StorageUnavailable as exc:
        logger.warning("Run store unavailable while streaming run_id=%s: %s", run_id, exc)
        return None


async def stream_run_events(
    run_id: str,
    state: RunState,
    queue: Subscription,
    *,
    store: RunStore,
    broker: RunEventBroker,
    keepalive: float,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[str]:
    """SSE frames for one run: the stored snapshot, then live events until a terminal one.

    The stored record is re-read whenever the stream goes idle or the queue has
    dropped events, so a run that finished in another process, or whose
    terminal event was lost, still ends the stream.
    """
    try:
        frame = _terminal_frame(run_id, state)
        if frame is not None:
            yield frame
            return
        if isinstance(state, Running):
            yield format_sse(
                EVENT_PHASE_START,
                {
                    "runId": run_id,
                    "phase": state.phase.value,
                    "progress": PHASE_PROGRESS[state.phase],
                    "updatedAt": state.updated_at,
                    "replay": True,
                },
            )
        while True:
            if await is_disconnected():
                break
            idle = False
            if queue.missed and queue.empty():
                queue.missed = 0
            else:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=keepalive)
                except asyncio.TimeoutError:
                    idle = True
                else:
                    yield format_sse(event.event, event.data)
                    if event.terminal:
                        break
                    continue
            current = await _stored_state(store, run_id)
            if isinstance(current, Unknown):
                logger.info("Run record expired while streaming run_id=%s", run_id)
                break
            frame = _terminal_frame(run_id, current)
            if frame is not None:
                yield frame
                break
            if idle:
                yield ": keepalive\n\n"
    finally:
        broker.unsubscribe(run_id, queue)


@router.get("/runs/{run_id}/events")
async def plan_run_events(
    run_id: str,
    request: Request,
    store: Optional[RunStore] = Depends(get_run_store),
    broker: RunEventBroker = Depends(get_broker),
):
    try:
        validate_run_id(run_id)
    except InvalidInput as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if store is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Run store is not configured")

    # subscribe before reading the snapshot so no transition falls in between
    queue = broker.subscribe(run_id)
    try:
        state = state_from_record(await store.get(run_id))
    except StorageUnavailable as exc:
        broker.unsubscribe(run_id, queue)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(state, Unknown):
        broker.unsubscribe(run_id, queue)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")

    keepalive = get_settings().event_keepalive_seconds

    return StreamingResponse(
        stream_run_events(
            run_id,
            state,
            queue,
            store=store,
            broker=broker,
            keepalive=keepalive,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/runs/{run_id}/diagnostics/{stream_name}")
async def export_run_diagnostics(
    run_id: str,
    stream_name: str,
    request: Request,
    store: Optional[RunStore] = Depends(get_run_store),
):
    if stream_name not in STREAMS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown diagnostics stream")
    coordinator: Optional[RunCoordinator] = getattr(request.app.state, "coordinator", None)
    recorder = coordinator.diagnostics_for(run_id) if coordinator is not None else None
    if recorder is not None:
        entries = recorder.export(stream_name)
    else:
        if store is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Run store is not configured")
        try:
            state = state_from_record(await store.get(run_id))
        except StorageUnavailable as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
        if isinstance(state, Unknown):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
        # a run still executing in another worker process has nothing exportable here yet
        entries = export_from_payload(state.payload, stream_name) if isinstance(state, (Complete, Failed)) else []
    return JSONResponse(
        content={"runId": run_id, "stream": stream_name, "entries": entries},
        headers={"Content-Disposition": f'attachment; filename="{run_id}-{stream_name}.json"'},
    )


@router.post("/targets", response_model=NutritionalTargets)
async def preview_targets(profile: Profile) -> NutritionalTargets:
    return calculate_targets(profile)
