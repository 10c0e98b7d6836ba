"""Run record vocabulary: the ordered phases and the run state variants.

A stored run record is a plain JSON object
``{status, phase?, payload?, startedAt, updatedAt}``. Inside the service it is
always decoded into exactly one of :class:`Running`, :class:`Complete`,
:class:`Failed` or :class:`Unknown`, and consumers match on the type.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union


class Phase(str, Enum):
    TARGETS = "targets"
    PLANNING = "planning"
    MARKET = "market"
    FINALIZING = "finalizing"

    @property
    def index(self) -> int:
        return PHASE_ORDER.index(self)

    def successor(self) -> Optional["Phase"]:
        position = self.index + 1
        return PHASE_ORDER[position] if position < len(PHASE_ORDER) else None


PHASE_ORDER = (Phase.TARGETS, Phase.PLANNING, Phase.MARKET, Phase.FINALIZING)

# overall progress reported when a phase starts
PHASE_PROGRESS = {
    Phase.TARGETS: 0,
    Phase.PLANNING: 20,
    Phase.MARKET: 45,
    Phase.FINALIZING: 90,
}


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Running:
    phase: Phase
    started_at: str
    updated_at: str


@dataclass(frozen=True)
class Complete:
    payload: Dict[str, Any]
    started_at: Optional[str]
    updated_at: str


@dataclass(frozen=True)
class Failed:
    payload: Dict[str, Any]
    started_at: Optional[str]
    updated_at: str

    @property
    def error(self) -> Dict[str, Any]:
        return self.payload.get("error") or {}


@dataclass(frozen=True)
class Unknown:
    pass


RunState = Union[Running, Complete, Failed, Unknown]
TERMINAL_STATES = (Complete, Failed)


def is_terminal(state: RunState) -> bool:
    return isinstance(state, TERMINAL_STATES)


def state_from_record(record: Optional[Dict[str, Any]]) -> RunState:
    if not record:
        return Unknown()
    status = record.get("status")
    started_at = record.get("startedAt")
    updated_at = record.get("updatedAt")
    if status == "running":
        raw_phase = record.get("phase") or record.get("lastPhase") or Phase.TARGETS.value
        try:
            phase = Phase(raw_phase)
        except ValueError:
            return Unknown()
        return Running(phase=phase, started_at=started_at or "", updated_at=updated_at or started_at or "")
    if status == "complete":
        return Complete(payload=record.get("payload") or {}, started_at=started_at, updated_at=updated_at or "")
    if status == "failed":
        return Failed(payload=record.get("payload") or {}, started_at=started_at, updated_at=updated_at or "")
    return Unknown()


def record_from_state(state: RunState) -> Dict[str, Any]:
    if isinstance(state, Running):
        return {
            "status": "running",
            "phase": state.phase.value,
            "startedAt": state.started_at,
            "updatedAt": state.updated_at,
        }
    if isinstance(state, Complete):
        status = "complete"
    elif isinstance(state, Failed):
        status = "failed"
    else:
        raise ValueError("an unknown run has no stored record")
    record: Dict[str, Any] = {"status": status, "payload": state.payload, "updatedAt": state.updated_at}
    if state.started_at:
        record["startedAt"] = state.started_at
    return record
