from __future__ import annotations

import json
from unittest import IsolatedAsyncioTestCase

from cheffy.services.run_events import RunEvent, RunEventBroker, format_sse


def test_format_sse_frames_event_and_data():
    frame = format_sse("phase:start", {"phase": "market", "progress": 45})
    lines = frame.split("\n")
    assert lines[0] == "event: phase:start"
    assert json.loads(lines[1][len("data: "):]) == {"phase": "market", "progress": 45}
    assert frame.endswith("\n\n")


def test_terminal_events():
    assert RunEvent("plan:complete").terminal
    assert RunEvent("error").terminal
    assert not RunEvent("ingredient:found").terminal


class RunEventBrokerTest(IsolatedAsyncioTestCase):
    async def test_publish_reaches_subscribers_of_that_run_only(self):
        broker = RunEventBroker()
        mine = broker.subscribe("run_a")
        other = broker.subscribe("run_b")

        broker.publish("run_a", "phase:start", {"phase": "planning"})

        event = mine.get_nowait()
        self.assertEqual(event.event, "phase:start")
        self.assertEqual(event.data, {"runId": "run_a", "phase": "planning"})
        self.assertTrue(other.empty())

    async def test_publish_without_subscribers_is_a_no_op(self):
        broker = RunEventBroker()
        broker.publish("run_a", "plan:start", {})
        self.assertEqual(broker.subscriber_count("run_a"), 0)

    async def test_full_queue_drops_events(self):
        broker = RunEventBroker(queue_size=1)
        queue = broker.subscribe("run_a")

        broker.publish("run_a", "plan:progress", {"progress": 50})
        broker.publish("run_a", "plan:progress", {"progress": 60})

        self.assertEqual(queue.qsize(), 1)
        self.assertEqual(queue.missed, 1)
        self.assertEqual(broker.dropped, 1)

    async def test_unsubscribe_removes_queue(self):
        broker = RunEventBroker()
        queue = broker.subscribe("run_a")
        self.assertEqual(broker.subscriber_count("run_a"), 1)

        broker.unsubscribe("run_a", queue)
        broker.unsubscribe("run_a", queue)

        self.assertEqual(broker.subscriber_count("run_a"), 0)
