from __future__ import annotations

import asyncio
import os
import tempfile
import unittest
from datetime import timedelta
from unittest import IsolatedAsyncioTestCase

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from factories import default_days

from cheffy import db
from cheffy.auth import get_current_principal
from cheffy.errors import InvalidInput, PlanNotFound
from cheffy.models import Base
from cheffy.routes import plans
from cheffy.services import saved_plans
from cheffy.services.run_store import InMemoryRunStore


class ClampSelectedDayTest(unittest.TestCase):
    def test_in_range_day_is_kept(self):
        self.assertEqual(saved_plans.clamp_selected_day(2, 3), 2)

    def test_out_of_range_day_falls_back_to_first(self):
        self.assertEqual(saved_plans.clamp_selected_day(7, 3), 1)
        self.assertEqual(saved_plans.clamp_selected_day(0, 3), 1)
        self.assertEqual(saved_plans.clamp_selected_day(None, 3), 1)
        self.assertEqual(saved_plans.clamp_selected_day(1, 0), 1)


class SavedPlanServiceTest(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)

    async def asyncTearDown(self):
        await self.engine.dispose()

    async def _save(self, session, name="Week one", days=3, user_id="user-1"):
        return await saved_plans.save_plan(
            session,
            user_id=user_id,
            name=name,
            meal_plan=default_days(days),
            nutritional_targets={"calories": 2556, "protein": 140, "fat": 71, "carbs": 339},
        )

    async def test_save_and_list_newest_first(self):
        async with self.Session() as session:
            older = await self._save(session, name="Older")
            older.created_at = older.created_at - timedelta(days=1)
            await session.commit()
            newer = await self._save(session, name="Newer")
            await self._save(session, name="Someone else", user_id="user-2")

        async with self.Session() as session:
            listed = await saved_plans.list_plans(session, "user-1")
            self.assertEqual([p.plan_id for p in listed], [newer.plan_id, older.plan_id])
            self.assertEqual(listed[0].day_count, 3)

    async def test_blank_name_gets_default(self):
        async with self.Session() as session:
            plan = await self._save(session, name="   ")
            self.assertTrue(plan.name.startswith("Meal plan "))

    async def test_empty_plan_is_rejected(self):
        async with self.Session() as session:
            with self.assertRaises(InvalidInput):
                await saved_plans.save_plan(session, user_id="user-1", name="Empty", meal_plan=[])

    async def test_loading_keeps_a_single_active_plan(self):
        async with self.Session() as session:
            first = await self._save(session, name="First")
            second = await self._save(session, name="Second")

            _, day = await saved_plans.load_plan(session, user_id="user-1", plan_id=first.plan_id, selected_day=2)
            self.assertEqual(day, 2)
            _, day = await saved_plans.load_plan(session, user_id="user-1", plan_id=second.plan_id, selected_day=7)
            self.assertEqual(day, 1)

        async with self.Session() as session:
            active = await saved_plans.get_active_plan(session, "user-1")
            self.assertEqual(active.plan_id, second.plan_id)
            listed = await saved_plans.list_plans(session, "user-1")
            self.assertEqual(sum(1 for p in listed if p.is_active), 1)

    async def test_rename_rejects_blank_names(self):
        async with self.Session() as session:
            plan = await self._save(session)
            with self.assertRaises(InvalidInput):
                await saved_plans.rename_plan(session, user_id="user-1", plan_id=plan.plan_id, name="  ")
            renamed = await saved_plans.rename_plan(session, user_id="user-1", plan_id=plan.plan_id, name=" Lean week ")
            self.assertEqual(renamed.name, "Lean week")

    async def test_plans_are_scoped_to_their_owner(self):
        async with self.Session() as session:
            plan = await self._save(session)
            with self.assertRaises(PlanNotFound):
                await saved_plans.get_plan(session, "user-2", plan.plan_id)
            with self.assertRaises(PlanNotFound):
                await saved_plans.delete_plan(session, user_id="user-2", plan_id=plan.plan_id)

    async def test_delete_removes_plan(self):
        async with self.Session() as session:
            plan = await self._save(session)
            await saved_plans.delete_plan(session, user_id="user-1", plan_id=plan.plan_id)
            with self.assertRaises(PlanNotFound):
                await saved_plans.get_plan(session, "user-1", plan.plan_id)

    async def test_serialize_plan_summary_omits_body(self):
        async with self.Session() as session:
            plan = await self._save(session)
            summary = saved_plans.serialize_plan(plan, include_body=False)
            self.assertNotIn("mealPlan", summary)
            self.assertEqual(summary["dayCount"], 3)
            self.assertEqual(len(saved_plans.serialize_plan(plan)["mealPlan"]), 3)


class SavedPlanRoutesTestCase(unittest.TestCase):
    def setUp(self):
        handle, self.db_path = tempfile.mkstemp(suffix=".db")
        os.close(handle)
        # NullPool: every session opens its connection on the loop that uses it
        self.engine = create_async_engine(f"sqlite+aiosqlite:///{self.db_path}", poolclass=NullPool)

        async def create_schema():
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        asyncio.run(create_schema())
        self._previous_factory = db.SessionLocal
        db.use_sessionmaker(async_sessionmaker(self.engine, expire_on_commit=False))

        self.run_store = InMemoryRunStore()
        app = FastAPI()
        app.include_router(plans.router, prefix="/v1")
        app.state.run_store = self.run_store
        app.dependency_overrides[get_current_principal] = lambda: {"sub": "user-1", "email": None, "claims": {}}
        self.client = TestClient(app)

    def tearDown(self):
        db.use_sessionmaker(self._previous_factory)
        asyncio.run(self.engine.dispose())
        os.unlink(self.db_path)

    def _create(self, name="Week one", days=3):
        resp = self.client.post("/v1/plans", json={"name": name, "mealPlan": default_days(days)})
        self.assertEqual(resp.status_code, 201)
        return resp.json()

    def test_save_list_load_rename_delete(self):
        created = self._create()
        self.assertEqual(created["dayCount"], 3)
        self.assertFalse(created["isActive"])

        listed = self.client.get("/v1/plans").json()
        self.assertEqual([p["planId"] for p in listed], [created["planId"]])
        self.assertNotIn("mealPlan", listed[0])

        loaded = self.client.post(f"/v1/plans/{created['planId']}/load", json={"selectedDay": 9})
        self.assertEqual(loaded.status_code, 200)
        self.assertEqual(loaded.json()["selectedDay"], 1)
        self.assertTrue(loaded.json()["plan"]["isActive"])

        active = self.client.get("/v1/plans/active").json()
        self.assertEqual(active["planId"], created["planId"])

        renamed = self.client.patch(f"/v1/plans/{created['planId']}", json={"name": "Cutting week"})
        self.assertEqual(renamed.json()["name"], "Cutting week")

        deleted = self.client.delete(f"/v1/plans/{created['planId']}")
        self.assertEqual(deleted.status_code, 204)
        self.assertEqual(self.client.get("/v1/plans").json(), [])

    def test_blank_rename_is_bad_request(self):
        created = self._create()
        resp = self.client.patch(f"/v1/plans/{created['planId']}", json={"name": "   "})
        self.assertEqual(resp.status_code, 400)

    def test_missing_plan_is_not_found(self):
        resp = self.client.post("/v1/plans/plan_missing/load", json={})
        self.assertEqual(resp.status_code, 404)

    def test_save_requires_plan_or_run(self):
        resp = self.client.post("/v1/plans", json={"name": "Nothing"})
        self.assertEqual(resp.status_code, 400)

    def test_save_from_completed_run(self):
        run_id = "run_0123456789abcdef"
        record = {
            "status": "complete",
            "payload": {
                "mealPlan": default_days(2),
                "nutritionalTargets": {"calories": 2000, "protein": 150, "fat": 60, "carbs": 200},
                "shoppingList": {"items": [], "totalCost": 0.0},
            },
            "updatedAt": "t",
        }
        asyncio.run(self.run_store.set(run_id, record))

        resp = self.client.post("/v1/plans", json={"runId": run_id})

        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertEqual(body["dayCount"], 2)
        self.assertEqual(body["sourceRunId"], run_id)
        self.assertEqual(body["nutritionalTargets"]["calories"], 2000)

    def test_save_from_unfinished_run_conflicts(self):
        run_id = "run_0123456789abcdef"
        asyncio.run(self.run_store.set(run_id, {"status": "running", "phase": "market", "startedAt": "t"}))
        resp = self.client.post("/v1/plans", json={"runId": run_id})
        self.assertEqual(resp.status_code, 409)
