from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set

logger = logging.getLogger(__name__)

EVENT_PLAN_START = "plan:start"
EVENT_PHASE_START = "phase:start"
EVENT_PROGRESS = "plan:progress"
EVENT_INGREDIENT_FOUND = "ingredient:found"
EVENT_INGREDIENT_FAILED = "ingredient:failed"
EVENT_LOG_MESSAGE = "log_message"
EVENT_COMPLETE = "plan:complete"
EVENT_ERROR = "error"
TERMINAL_EVENTS = {EVENT_COMPLETE, EVENT_ERROR}


@dataclass(frozen=True)
class RunEvent:
    event: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS


def format_sse(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, separators=(',', ':'))}\n\n"


class Subscription(asyncio.Queue):
    """Subscriber queue that counts the events it had no room for."""

    def __init__(self, maxsize: int = 0) -> None:
        super().__init__(maxsize)
        self.missed = 0


class RunEventBroker:
    """Best-effort fan-out of run events to live subscribers.

    Nothing is buffered for absent subscribers and a subscriber whose queue is
    full misses events; the persisted run record is the source of truth.
    """

    def __init__(self, *, queue_size: int = 256) -> None:
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Set[Subscription]] = {}
        self.dropped = 0

    def subscribe(self, run_id: str) -> Subscription:
        queue = Subscription(maxsize=self.queue_size)
        with self._lock:
            self._subscribers.setdefault(run_id, set()).add(queue)
        return queue

    def unsubscribe(self, run_id: str, queue: Subscription) -> None:
        with self._lock:
            queues = self._subscribers.get(run_id)
            if not queues:
                return
            queues.discard(queue)
            if not queues:
                del self._subscribers[run_id]

    def subscriber_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(run_id, ()))

    def publish(self, run_id: str, event: str, data: Dict[str, Any]) -> None:
        message = RunEvent(event=event, data={"runId": run_id, **data})
        with self._lock:
            queues: List[Subscription] = list(self._subscribers.get(run_id, ()))
        for queue in queues:
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                queue.missed += 1
                self.dropped += 1
                logger.debug("Dropped %s event for run %s (subscriber queue full)", event, run_id)
