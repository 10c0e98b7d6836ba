"""Client half of the run recovery protocol.

A client follows a run over the SSE event stream and, whenever the stream
errors, ends without a terminal event or stays silent for too long, falls
back to polling ``GET /v1/plan/status`` on a timer. The pending run id is
kept in a small JSON file so a restarted client can pick the run back up.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..errors import InvalidInput
from ..services.saved_plans import clamp_selected_day

logger = logging.getLogger(__name__)

PENDING_RUN_MAX_AGE_SECONDS = 60 * 60
TERMINAL_STATUSES = {"complete", "failed"}


class PendingRunStore:
    """Remembers at most one in-flight run id; entries older than an hour are dropped."""

    def __init__(self, path: str | os.PathLike[str], *, max_age_seconds: float = PENDING_RUN_MAX_AGE_SECONDS) -> None:
        self.path = Path(path)
        self.max_age_seconds = max_age_seconds

    def save(self, run_id: str, **meta: Any) -> None:
        if not run_id:
            return
        record = {"runId": run_id, "startedAt": time.time(), **meta}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(record), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to persist pending run %s: %s", run_id, exc)

    def load(self) -> Optional[Dict[str, Any]]:
        try:
            record = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Discarding unreadable pending run file: %s", exc)
            self.clear()
            return None
        if not isinstance(record, dict) or not isinstance(record.get("runId"), str) or not record.get("startedAt"):
            self.clear()
            return None
        if time.time() - float(record["startedAt"]) > self.max_age_seconds:
            logger.info("Discarding stale pending run %s", record["runId"])
            self.clear()
            return None
        return record

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


@dataclass
class RecoveryOutcome:
    status: str  # complete | failed | unknown | running
    payload: Optional[Dict[str, Any]] = None
    source: str = "poll"
    last_phase: Optional[str] = None
    events: int = 0

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class _StreamState:
    last_phase: Optional[str] = None
    events: int = 0


EventCallback = Callable[[str, Dict[str, Any]], None]


class RunRecoveryClient:
    def __init__(
        self,
        base_url: str,
        *,
        poll_interval: float = 3.0,
        silence_timeout: float = 45.0,
        max_polls: int = 1200,
        pending: Optional[PendingRunStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.silence_timeout = silence_timeout
        self.max_polls = max_polls
        self.pending = pending
        self._transport = transport
        self._sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            transport=self._transport,
            timeout=httpx.Timeout(10.0, read=self.silence_timeout),
        )

    async def recover(self, run_id: str, *, on_event: Optional[EventCallback] = None) -> RecoveryOutcome:
        """Follow the live stream, then poll until the run is terminal or unknown."""
        if self.pending is not None:
            self.pending.save(run_id)
        outcome = await self.follow_stream(run_id, on_event=on_event)
        if outcome is None or outcome.status == "running":
            logger.info("Event stream for %s ended early; polling status", run_id)
            last_phase = outcome.last_phase if outcome else None
            outcome = await self.poll(run_id, last_phase=last_phase)
        if outcome.status != "running" and self.pending is not None:
            self.pending.clear()
        return outcome

    async def resume_pending(self, *, on_event: Optional[EventCallback] = None) -> Optional[RecoveryOutcome]:
        if self.pending is None:
            return None
        record = self.pending.load()
        if record is None:
            return None
        return await self.recover(record["runId"], on_event=on_event)

    async def follow_stream(self, run_id: str, *, on_event: Optional[EventCallback] = None) -> Optional[RecoveryOutcome]:
        state = _StreamState()
        event_name = "message"
        # keepalive comments do not count as activity
        last_event_at = time.monotonic()
        try:
            async with self._client() as client:
                async with client.stream("GET", f"/v1/plan/runs/{run_id}/events") as resp:
                    if resp.status_code == 404:
                        return RecoveryOutcome(status="unknown", source="stream")
                    if resp.status_code >= 400:
                        logger.warning("Event stream for %s returned %s", run_id, resp.status_code)
                        return None
                    async for raw_line in resp.aiter_lines():
                        line = raw_line.strip()
                        if not line or line.startswith(":"):
                            if time.monotonic() - last_event_at > self.silence_timeout:
                                logger.info("Event stream for %s sent no events for %ss", run_id, self.silence_timeout)
                                break
                            continue
                        if line.startswith("event:"):
                            event_name = line[6:].strip()
                            continue
                        if not line.startswith("data:"):
                            continue
                        try:
                            data = json.loads(line[5:].strip())
                        except json.JSONDecodeError:
                            logger.debug("Malformed event data: %s", line)
                            continue
                        name, event_name = event_name, "message"
                        last_event_at = time.monotonic()
                        state.events += 1
                        if on_event is not None:
                            on_event(name, data)
                        if name == "phase:start":
                            state.last_phase = data.get("phase") or state.last_phase
                        elif name == "plan:complete":
                            return RecoveryOutcome(
                                status="complete",
                                payload=data.get("result"),
                                source="stream",
                                last_phase=state.last_phase,
                                events=state.events,
                            )
                        elif name == "error":
                            return RecoveryOutcome(
                                status="failed",
                                payload={"error": data.get("error")},
                                source="stream",
                                last_phase=state.last_phase,
                                events=state.events,
                            )
        except httpx.ReadTimeout:
            logger.info("Event stream for %s silent for %ss", run_id, self.silence_timeout)
        except httpx.HTTPError as exc:
            logger.warning("Event stream for %s failed: %s", run_id, exc)
        return RecoveryOutcome(status="running", source="stream", last_phase=state.last_phase, events=state.events)

    async def fetch_status(self, run_id: str) -> httpx.Response:
        async with self._client() as client:
            return await client.get("/v1/plan/status", params={"runId": run_id})

    async def poll(self, run_id: str, *, last_phase: Optional[str] = None) -> RecoveryOutcome:
        for attempt in range(1, self.max_polls + 1):
            try:
                resp = await self.fetch_status(run_id)
            except httpx.HTTPError as exc:
                logger.warning("Status poll %d for %s failed: %s", attempt, run_id, exc)
                resp = None
            if resp is not None:
                if resp.status_code == 400:
                    raise InvalidInput(resp.json().get("message") or "invalid run id")
                if resp.status_code == 200:
                    body = resp.json()
                    status = body.get("status")
                    if status in TERMINAL_STATUSES:
                        return RecoveryOutcome(status=status, payload=body.get("payload"), last_phase=last_phase)
                    if status == "unknown":
                        return RecoveryOutcome(status="unknown", last_phase=last_phase)
                    last_phase = body.get("lastPhase") or last_phase
                elif resp.status_code == 503:
                    # store down is not a failed run; keep asking
                    logger.info("Run store unavailable while polling %s", run_id)
                else:
                    logger.warning("Status poll for %s returned %s", run_id, resp.status_code)
            if attempt < self.max_polls:
                await self._sleep(self.poll_interval)
        return RecoveryOutcome(status="running", last_phase=last_phase)


class ActivePlanState:
    """The single active plan on a client and the day being viewed."""

    def __init__(self) -> None:
        self.plan_id: Optional[str] = None
        self.day_count: int = 0
        self.selected_day: int = 1

    def activate(self, plan_id: str, day_count: int) -> int:
        self.plan_id = plan_id
        self.day_count = day_count
        self.selected_day = clamp_selected_day(self.selected_day, day_count)
        return self.selected_day

    def select_day(self, day: int) -> int:
        self.selected_day = clamp_selected_day(day, self.day_count)
        return self.selected_day

    def clear(self) -> None:
        self.plan_id = None
        self.day_count = 0
        self.selected_day = 1
