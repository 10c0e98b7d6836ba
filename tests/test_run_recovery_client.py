from __future__ import annotations

import asyncio
import json
import os
import tempfile
import time
import unittest
from unittest import IsolatedAsyncioTestCase

import httpx

from cheffy.client.recovery import ActivePlanState, PendingRunStore, RunRecoveryClient
from cheffy.errors import InvalidInput

RUN_ID = "run_0123456789abcdef"
EVENTS_PATH = f"/v1/plan/runs/{RUN_ID}/events"


def sse(*frames):
    return "".join(f"event: {event}\ndata: {json.dumps(data)}\n\n" for event, data in frames)


class ScriptedServer:
    """Serves a fixed events response and a queue of status responses."""

    def __init__(self, events_response, statuses=()):
        self.events_response = events_response
        self.statuses = list(statuses)
        self.status_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == EVENTS_PATH:
            if isinstance(self.events_response, Exception):
                raise self.events_response
            return self.events_response
        if request.url.path == "/v1/plan/status":
            self.status_calls += 1
            status_code, body = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return httpx.Response(status_code, json=body)
        return httpx.Response(404)


class RunRecoveryClientTest(IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.pending = PendingRunStore(os.path.join(self.tmpdir.name, "pending.json"))
        self.sleeps = []

    def tearDown(self):
        self.tmpdir.cleanup()

    async def _sleep(self, seconds):
        self.sleeps.append(seconds)

    def _client(self, server, **kwargs):
        return RunRecoveryClient(
            "http://cheffy.test",
            pending=self.pending,
            transport=httpx.MockTransport(server),
            sleep=self._sleep,
            poll_interval=0.5,
            **kwargs,
        )

    async def test_stream_delivers_terminal_result(self):
        body = sse(
            ("plan:start", {"runId": RUN_ID, "phase": "targets"}),
            ("phase:start", {"runId": RUN_ID, "phase": "market", "progress": 45}),
            ("plan:complete", {"runId": RUN_ID, "result": {"mealPlan": []}}),
        )
        server = ScriptedServer(httpx.Response(200, text=body, headers={"content-type": "text/event-stream"}))
        seen = []

        outcome = await self._client(server).recover(RUN_ID, on_event=lambda name, data: seen.append(name))

        self.assertEqual(outcome.status, "complete")
        self.assertEqual(outcome.source, "stream")
        self.assertEqual(outcome.payload, {"mealPlan": []})
        self.assertEqual(outcome.last_phase, "market")
        self.assertEqual(seen, ["plan:start", "phase:start", "plan:complete"])
        self.assertEqual(server.status_calls, 0)
        self.assertIsNone(self.pending.load())

    async def test_broken_stream_falls_back_to_polling(self):
        server = ScriptedServer(
            httpx.ConnectError("connection reset"),
            statuses=[
                (200, {"status": "running", "lastPhase": "planning"}),
                (503, {"error": "Storage unavailable", "status": "unknown"}),
                (200, {"status": "running", "lastPhase": "market"}),
                (200, {"status": "complete", "payload": {"runId": RUN_ID}}),
            ],
        )

        outcome = await self._client(server).recover(RUN_ID)

        self.assertEqual(outcome.status, "complete")
        self.assertEqual(outcome.source, "poll")
        self.assertEqual(outcome.payload, {"runId": RUN_ID})
        self.assertEqual(outcome.last_phase, "market")
        self.assertEqual(server.status_calls, 4)
        self.assertEqual(self.sleeps, [0.5, 0.5, 0.5])
        self.assertIsNone(self.pending.load())

    async def test_keepalive_only_stream_falls_back_to_polling(self):
        async def keepalives():
            while True:
                yield b": keepalive\n\n"
                await asyncio.sleep(0.02)

        server = ScriptedServer(
            httpx.Response(200, content=keepalives(), headers={"content-type": "text/event-stream"}),
            statuses=[(200, {"status": "complete", "payload": {"runId": RUN_ID}})],
        )

        outcome = await asyncio.wait_for(self._client(server, silence_timeout=0.2).recover(RUN_ID), timeout=5.0)

        self.assertEqual(outcome.status, "complete")
        self.assertEqual(outcome.source, "poll")
        self.assertEqual(server.status_calls, 1)

    async def test_stream_ending_early_polls_for_failure(self):
        body = sse(("phase:start", {"runId": RUN_ID, "phase": "planning"}))
        server = ScriptedServer(
            httpx.Response(200, text=body),
            statuses=[(200, {"status": "failed", "payload": {"error": {"code": "provider_failure"}}})],
        )

        outcome = await self._client(server).recover(RUN_ID)

        self.assertEqual(outcome.status, "failed")
        self.assertEqual(outcome.payload["error"]["code"], "provider_failure")
        self.assertEqual(outcome.last_phase, "planning")

    async def test_expired_run_is_unknown(self):
        server = ScriptedServer(httpx.Response(404))
        outcome = await self._client(server).recover(RUN_ID)
        self.assertEqual(outcome.status, "unknown")
        self.assertIsNone(self.pending.load())

    async def test_invalid_run_id_stops_polling(self):
        server = ScriptedServer(
            httpx.Response(400),
            statuses=[(400, {"error": "Invalid runId", "message": "A valid runId query parameter is required"})],
        )
        with self.assertRaises(InvalidInput):
            await self._client(server).poll("short")

    async def test_polling_gives_up_but_keeps_pending_run(self):
        server = ScriptedServer(
            httpx.Response(500),
            statuses=[(200, {"status": "running", "lastPhase": "market"})],
        )

        outcome = await self._client(server, max_polls=3).recover(RUN_ID)

        self.assertEqual(outcome.status, "running")
        self.assertEqual(server.status_calls, 3)
        self.assertEqual(self.pending.load()["runId"], RUN_ID)

    async def test_resume_pending_recovers_saved_run(self):
        self.pending.save(RUN_ID)
        server = ScriptedServer(httpx.Response(500), statuses=[(200, {"status": "complete", "payload": {}})])

        outcome = await self._client(server).resume_pending()

        self.assertEqual(outcome.status, "complete")
        self.assertIsNone(self.pending.load())

    async def test_resume_without_pending_run(self):
        server = ScriptedServer(httpx.Response(500))
        self.assertIsNone(await self._client(server).resume_pending())


class PendingRunStoreTest(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, "nested", "pending.json")

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_save_and_load(self):
        store = PendingRunStore(self.path)
        store.save(RUN_ID, days=3)
        record = store.load()
        self.assertEqual(record["runId"], RUN_ID)
        self.assertEqual(record["days"], 3)

    def test_stale_record_is_discarded(self):
        store = PendingRunStore(self.path, max_age_seconds=60)
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as handle:
            json.dump({"runId": RUN_ID, "startedAt": time.time() - 3600}, handle)

        self.assertIsNone(store.load())
        self.assertFalse(os.path.exists(self.path))

    def test_malformed_record_is_discarded(self):
        store = PendingRunStore(self.path)
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as handle:
            handle.write("{not json")

        self.assertIsNone(store.load())
        self.assertFalse(os.path.exists(self.path))


class ActivePlanStateTest(unittest.TestCase):
    def test_selected_day_is_clamped_to_plan_length(self):
        state = ActivePlanState()
        self.assertEqual(state.activate("plan_a", 3), 1)
        self.assertEqual(state.select_day(3), 3)
        self.assertEqual(state.select_day(7), 1)

        state.select_day(3)
        self.assertEqual(state.activate("plan_b", 2), 1)

    def test_clear_resets_state(self):
        state = ActivePlanState()
        state.activate("plan_a", 5)
        state.select_day(4)
        state.clear()
        self.assertIsNone(state.plan_id)
        self.assertEqual(state.selected_day, 1)
