"""Plan-generation runs.

``RunCoordinator`` owns the persisted run record of every run it starts. Each
run executes as one background task that walks the phases strictly in order
(targets, planning, market, finalizing). Every state change is written to the
run store first and only then published to live subscribers, so a client
that polls the status endpoint never sees less than the last event it may
have missed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Set

from ..config import Settings
from ..errors import CheffyError, PhaseOrderingFault, RunAlreadyFinished
from ..observability import bind_phase, run_log_context
from ..schemas import IngredientResolution, NutritionalTargets, Profile
from .catalog import FallbackCatalog, build_catalog
from .diagnostics import DiagnosticsRecorder
from .ingredient_resolver import IngredientResolver, ResolutionSet, collect_ingredients
from .plan_generator import GeneratedPlan, generate_plan
from .providers import GenerationProvider, ProviderGateway, build_provider
from .run_events import (
    EVENT_COMPLETE,
    EVENT_ERROR,
    EVENT_INGREDIENT_FAILED,
    EVENT_INGREDIENT_FOUND,
    EVENT_LOG_MESSAGE,
    EVENT_PHASE_START,
    EVENT_PLAN_START,
    EVENT_PROGRESS,
    RunEventBroker,
)
from .run_state import (
    PHASE_PROGRESS,
    Complete,
    Failed,
    Phase,
    Running,
    RunState,
    is_terminal,
    record_from_state,
    state_from_record,
    utcnow_iso,
)
from .run_store import RunStore
from .shopping_list import aggregate_shopping_list
from .targets import calculate_targets

logger = logging.getLogger(__name__)

RUN_ID_PREFIX = "run_"


def new_run_id() -> str:
    return f"{RUN_ID_PREFIX}{uuid.uuid4().hex}"


class RunCoordinator:
    def __init__(
        self,
        store: RunStore,
        broker: RunEventBroker,
        *,
        gateway: ProviderGateway,
        primary: GenerationProvider,
        secondary: Optional[GenerationProvider],
        catalog: FallbackCatalog,
        default_store: str,
        max_workers: int = 6,
        max_substitutes: int = 5,
    ) -> None:
        self.store = store
        self.broker = broker
        self.gateway = gateway
        self.primary = primary
        self.secondary = secondary
        self.catalog = catalog
        self.default_store = default_store
        self.max_workers = max_workers
        self.max_substitutes = max_substitutes
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._diagnostics: Dict[str, DiagnosticsRecorder] = {}

    # ------------------------------------------------------------------
    # Run record transitions

    def _lock(self, run_id: str) -> asyncio.Lock:
        return self._locks.setdefault(run_id, asyncio.Lock())

    async def _read(self, run_id: str) -> RunState:
        return state_from_record(await self.store.get(run_id))

    async def _write(self, run_id: str, state: RunState) -> None:
        await self.store.set(run_id, record_from_state(state))

    async def start_run(self, profile: Profile) -> str:
        run_id = new_run_id()
        now = utcnow_iso()
        await self._write(run_id, Running(phase=Phase.TARGETS, started_at=now, updated_at=now))
        self.broker.publish(
            run_id,
            EVENT_PLAN_START,
            {"phase": Phase.TARGETS.value, "startedAt": now, "days": profile.days},
        )
        logger.info("Run started run_id=%s days=%d", run_id, profile.days)
        return run_id

    async def advance(self, run_id: str, phase: Phase, partial: Optional[Dict[str, Any]] = None) -> None:
        async with self._lock(run_id):
            state = await self._read(run_id)
            if is_terminal(state):
                raise RunAlreadyFinished(f"run {run_id} already finished; cannot enter {phase.value}")
            if not isinstance(state, Running):
                raise PhaseOrderingFault(f"run {run_id} has no running record; cannot enter {phase.value}")
            if state.phase.successor() is not phase:
                raise PhaseOrderingFault(
                    f"run {run_id} cannot move from {state.phase.value} to {phase.value}"
                )
            now = utcnow_iso()
            await self._write(run_id, Running(phase=phase, started_at=state.started_at, updated_at=now))
        data: Dict[str, Any] = {"phase": phase.value, "progress": PHASE_PROGRESS[phase], "updatedAt": now}
        if partial:
            data["partial"] = partial
        self.broker.publish(run_id, EVENT_PHASE_START, data)

    async def complete(self, run_id: str, artifact: Dict[str, Any]) -> None:
        async with self._lock(run_id):
            state = await self._read(run_id)
            if is_terminal(state):
                raise RunAlreadyFinished(f"run {run_id} already finished")
            if not isinstance(state, Running):
                raise PhaseOrderingFault(f"run {run_id} has no running record; cannot complete")
            if state.phase is not Phase.FINALIZING:
                raise PhaseOrderingFault(f"run {run_id} cannot complete from phase {state.phase.value}")
            await self._write(
                run_id,
                Complete(payload=artifact, started_at=state.started_at, updated_at=utcnow_iso()),
            )
        self.broker.publish(run_id, EVENT_COMPLETE, {"result": artifact})
        self._locks.pop(run_id, None)

    async def fail(self, run_id: str, error: Dict[str, Any], diagnostics: Optional[Dict[str, Any]] = None) -> None:
        payload: Dict[str, Any] = {"error": error}
        if diagnostics is not None:
            payload["diagnostics"] = diagnostics
        async with self._lock(run_id):
            state = await self._read(run_id)
            if is_terminal(state):
                raise RunAlreadyFinished(f"run {run_id} already finished")
            started_at = state.started_at if isinstance(state, Running) else None
            await self._write(run_id, Failed(payload=payload, started_at=started_at, updated_at=utcnow_iso()))
        self.broker.publish(run_id, EVENT_ERROR, {"error": error})
        self._locks.pop(run_id, None)

    # ------------------------------------------------------------------
    # Background execution

    def schedule(self, run_id: str, profile: Profile) -> asyncio.Task:
        """Fire-and-forget: the run outlives the request that started it."""
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run_with_guard(run_id, profile))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_with_guard(self, run_id: str, profile: Profile) -> None:
        logger.info("Plan run dispatch run_id=%s", run_id)
        try:
            await self.execute(run_id, profile)
        except asyncio.CancelledError:
            logger.warning("Plan run cancelled run_id=%s", run_id)
            raise
        except Exception:
            logger.exception("Plan run crashed run_id=%s", run_id)

    async def wait_idle(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()

    def diagnostics_for(self, run_id: str) -> Optional[DiagnosticsRecorder]:
        return self._diagnostics.get(run_id)

    def _progress(self, run_id: str, progress: int, message: str) -> None:
        self.broker.publish(run_id, EVENT_PROGRESS, {"progress": progress, "message": message})

    async def execute(self, run_id: str, profile: Profile) -> None:
        recorder = DiagnosticsRecorder(
            run_id,
            listener=lambda entry: self.broker.publish(run_id, EVENT_LOG_MESSAGE, entry),
        )
        self._diagnostics[run_id] = recorder
        phase = Phase.TARGETS
        with run_log_context(run_id):
            try:
                bind_phase(phase.value)
                targets = calculate_targets(profile)
                recorder.step(
                    f"Targets: {targets.calories} kcal, P{targets.protein} F{targets.fat} C{targets.carbs}",
                    phase=phase.value,
                )

                phase = Phase.PLANNING
                await self._enter(run_id, phase, recorder, {"nutritionalTargets": targets.model_dump()})
                generated = await self._plan(profile, targets, recorder)
                recorder.macro_debug(generated.meal_plan, targets, profile.eatingOccasions)

                phase = Phase.MARKET
                await self._enter(run_id, phase, recorder, {"days": generated.meal_plan.day_count})
                resolutions = await self._market(run_id, profile, generated, recorder)

                phase = Phase.FINALIZING
                await self._enter(run_id, phase, recorder)
                shopping_list = aggregate_shopping_list(generated.meal_plan, resolutions)
                recorder.step(
                    f"Shopping list: {len(shopping_list.items)} item(s), total {shopping_list.totalCost:.2f}, "
                    f"{shopping_list.unresolvedCount} unresolved",
                    phase=phase.value,
                )
                artifact = {
                    "runId": run_id,
                    "mealPlan": [day.model_dump(mode="json") for day in generated.meal_plan.days],
                    "nutritionalTargets": targets.model_dump(),
                    "results": {r.key: r.model_dump(mode="json") for r in resolutions.ordered()},
                    "shoppingList": shopping_list.model_dump(mode="json"),
                    "provider": generated.provider,
                    "failedAttempts": generated.failed_attempts,
                    "diagnostics": recorder.snapshot(),
                }
                await self.complete(run_id, artifact)
                logger.info("Run complete run_id=%s provider=%s", run_id, generated.provider)
            except CheffyError as exc:
                await self._fail_run(run_id, phase, exc.to_detail(), recorder)
            except Exception as exc:
                logger.exception("Unexpected error in phase %s", phase.value)
                await self._fail_run(
                    run_id,
                    phase,
                    {"code": "internal_error", "message": str(exc) or type(exc).__name__},
                    recorder,
                )
            finally:
                self._diagnostics.pop(run_id, None)
                self._locks.pop(run_id, None)

    async def _enter(
        self,
        run_id: str,
        phase: Phase,
        recorder: DiagnosticsRecorder,
        partial: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.advance(run_id, phase, partial)
        bind_phase(phase.value)
        recorder.step(f"Phase {phase.value} started", phase=phase.value)

    async def _plan(
        self,
        profile: Profile,
        targets: NutritionalTargets,
        recorder: DiagnosticsRecorder,
    ) -> GeneratedPlan:
        generated = await generate_plan(
            profile,
            targets,
            gateway=self.gateway,
            primary=self.primary,
            secondary=self.secondary,
        )
        for attempt in generated.failed_attempts:
            recorder.step(
                f"Provider {attempt['name']} failed: {attempt['reason']}",
                level="WARNING",
                phase=Phase.PLANNING.value,
            )
        recorder.step(
            f"Plan generated by {generated.provider} ({generated.meal_plan.day_count} day(s))",
            phase=Phase.PLANNING.value,
        )
        return generated

    async def _market(
        self,
        run_id: str,
        profile: Profile,
        generated: GeneratedPlan,
        recorder: DiagnosticsRecorder,
    ) -> ResolutionSet:
        store = profile.store or self.default_store
        resolver = IngredientResolver(
            self.catalog,
            store=store,
            max_workers=self.max_workers,
            max_substitutes=self.max_substitutes,
        )
        total = max(1, len(collect_ingredients(generated.meal_plan)))
        done = 0
        span = PHASE_PROGRESS[Phase.FINALIZING] - PHASE_PROGRESS[Phase.MARKET]

        async def on_result(resolution: IngredientResolution) -> None:
            nonlocal done
            done += 1
            data = resolution.model_dump(mode="json")
            if resolution.status == "matched":
                self.broker.publish(run_id, EVENT_INGREDIENT_FOUND, data)
            else:
                recorder.failed_ingredient(resolution)
                self.broker.publish(run_id, EVENT_INGREDIENT_FAILED, data)
            progress = PHASE_PROGRESS[Phase.MARKET] + min(span, span * done // total)
            self._progress(run_id, progress, f"Resolved {resolution.ingredient}")

        resolutions = await resolver.resolve(generated.meal_plan, on_result=on_result)
        recorder.step(
            f"Market: {len(resolutions.matched)} matched, {len(resolutions.failed)} unresolved at {store}",
            phase=Phase.MARKET.value,
        )
        return resolutions

    async def _fail_run(
        self,
        run_id: str,
        phase: Phase,
        detail: Dict[str, Any],
        recorder: DiagnosticsRecorder,
    ) -> None:
        error = {**detail, "phase": phase.value}
        recorder.step(f"Run failed in {phase.value}: {detail.get('message')}", level="ERROR", phase=phase.value)
        try:
            await self.fail(run_id, error, diagnostics=recorder.snapshot())
        except RunAlreadyFinished:
            logger.error("Run %s already finished; failure not recorded: %s", run_id, error)
        except CheffyError:
            logger.exception("Could not persist failure for run %s", run_id)


def build_run_coordinator(settings: Settings, store: RunStore, broker: RunEventBroker) -> RunCoordinator:
    secondary = build_provider(settings.fallback_model, settings) if settings.fallback_model else None
    return RunCoordinator(
        store,
        broker,
        gateway=ProviderGateway(timeout=settings.provider_timeout_seconds),
        primary=build_provider(settings.primary_model, settings),
        secondary=secondary,
        catalog=build_catalog(settings),
        default_store=settings.default_store,
        max_workers=settings.market_max_workers,
        max_substitutes=settings.market_max_substitutes,
    )
