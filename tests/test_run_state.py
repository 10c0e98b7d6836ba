from __future__ import annotations

import time
from unittest import IsolatedAsyncioTestCase

from redis.exceptions import ConnectionError as RedisConnectionError

from cheffy.config import Settings
from cheffy.errors import StorageUnavailable
from cheffy.services.run_state import (
    Complete,
    Failed,
    Phase,
    Running,
    Unknown,
    is_terminal,
    record_from_state,
    state_from_record,
    utcnow_iso,
)
from cheffy.services.run_store import InMemoryRunStore, RedisRunStore, build_run_store


def test_phase_successors_follow_fixed_order():
    assert Phase.TARGETS.successor() is Phase.PLANNING
    assert Phase.PLANNING.successor() is Phase.MARKET
    assert Phase.MARKET.successor() is Phase.FINALIZING
    assert Phase.FINALIZING.successor() is None


def test_state_from_record_variants():
    assert state_from_record(None) == Unknown()
    assert state_from_record({}) == Unknown()
    assert state_from_record({"status": "bogus"}) == Unknown()
    assert state_from_record({"status": "running", "phase": "cooking"}) == Unknown()

    running = state_from_record({"status": "running", "lastPhase": "market", "startedAt": "t0"})
    assert running == Running(phase=Phase.MARKET, started_at="t0", updated_at="t0")

    failed = state_from_record({"status": "failed", "payload": {"error": {"code": "x"}}, "updatedAt": "t1"})
    assert isinstance(failed, Failed)
    assert failed.error == {"code": "x"}
    assert is_terminal(failed)
    assert not is_terminal(running)


def test_record_from_state_keeps_payload():
    state = Complete(payload={"mealPlan": []}, started_at="t0", updated_at="t1")
    assert record_from_state(state) == {
        "status": "complete",
        "payload": {"mealPlan": []},
        "startedAt": "t0",
        "updatedAt": "t1",
    }
    assert state_from_record(record_from_state(state)) == state


def test_utcnow_iso_is_zulu():
    assert utcnow_iso().endswith("Z")


class _BrokenRedis:
    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def set(self, key, value, ex=None):
        raise RedisConnectionError("connection refused")

    async def ping(self):
        raise RedisConnectionError("connection refused")


class _DictRedis:
    def __init__(self):
        self.values = {}
        self.expiry = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiry[key] = ex

    async def ping(self):
        return True


class RunStoreTest(IsolatedAsyncioTestCase):
    async def test_in_memory_store_returns_copies(self):
        store = InMemoryRunStore()
        record = {"status": "running", "phase": "targets"}
        await store.set("run_1234567890", record)
        record["phase"] = "market"

        self.assertEqual(await store.get("run_1234567890"), {"status": "running", "phase": "targets"})
        self.assertIsNone(await store.get("run_missing000"))

    async def test_in_memory_store_expires_records(self):
        store = InMemoryRunStore(ttl_seconds=0)
        await store.set("run_1234567890", {"status": "running"})
        time.sleep(0.001)
        self.assertIsNone(await store.get("run_1234567890"))

    async def test_redis_store_sets_prefixed_key_with_ttl(self):
        client = _DictRedis()
        store = RedisRunStore(client, key_prefix="cheffy:run:", ttl_seconds=3600)
        await store.set("run_1234567890", {"status": "complete", "payload": {}})

        self.assertEqual(client.expiry["cheffy:run:run_1234567890"], 3600)
        self.assertEqual(await store.get("run_1234567890"), {"status": "complete", "payload": {}})

    async def test_redis_errors_become_storage_unavailable(self):
        store = RedisRunStore(_BrokenRedis(), key_prefix="cheffy:run:", ttl_seconds=60)
        with self.assertRaises(StorageUnavailable):
            await store.get("run_1234567890")
        with self.assertRaises(StorageUnavailable):
            await store.set("run_1234567890", {"status": "running"})
        self.assertFalse(await store.ping())

    def test_build_run_store_without_redis(self):
        self.assertIsInstance(
            build_run_store(Settings(redis_url=None, run_store_memory_fallback=True)),
            InMemoryRunStore,
        )
        self.assertIsNone(build_run_store(Settings(redis_url=None, run_store_memory_fallback=False)))
