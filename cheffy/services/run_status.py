from __future__ import annotations

from typing import Any, Dict, Optional

from ..errors import InvalidInput, StorageUnavailable
from .run_state import Complete, Failed, Running, RunState, Unknown, state_from_record
from .run_store import RunStore

MIN_RUN_ID_LENGTH = 10
UNKNOWN_MESSAGE = "No record found for this run ID. It may have expired or never existed."


def validate_run_id(run_id: Any) -> str:
    if not isinstance(run_id, str) or len(run_id) < MIN_RUN_ID_LENGTH:
        raise InvalidInput("A valid runId query parameter is required")
    return run_id


def status_body(state: RunState) -> Dict[str, Any]:
    if isinstance(state, Running):
        return {
            "status": "running",
            "updatedAt": state.updated_at,
            "lastPhase": state.phase.value,
            "startedAt": state.started_at or None,
        }
    if isinstance(state, Complete):
        return {"status": "complete", "payload": state.payload, "updatedAt": state.updated_at}
    if isinstance(state, Failed):
        return {"status": "failed", "payload": state.payload, "updatedAt": state.updated_at}
    if isinstance(state, Unknown):
        return {"status": "unknown", "message": UNKNOWN_MESSAGE}
    raise TypeError(f"unhandled run state: {state!r}")


async def read_status(store: Optional[RunStore], run_id: Any) -> Dict[str, Any]:
    """Read-only view of one run; the id is checked before the store is touched."""
    run_id = validate_run_id(run_id)
    if store is None:
        raise StorageUnavailable("Run store is not configured")
    return status_body(state_from_record(await store.get(run_id)))
