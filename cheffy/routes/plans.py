from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from .. import db
from ..auth import get_current_principal
from ..errors import InvalidInput, PlanNotFound, StorageUnavailable
from ..schemas import (
    LoadPlanRequest,
    LoadPlanResponse,
    RenamePlanRequest,
    SavedPlanResponse,
    SavedPlanSummary,
    SavePlanRequest,
)
from ..services import saved_plans
from ..services.run_state import Complete, state_from_record
from .plan import get_run_store

router = APIRouter(prefix="/plans", tags=["plans"])

logger = logging.getLogger(__name__)


def require_database() -> None:
    if db.SessionLocal is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database not configured")


async def _plan_body_from_run(request: Request, run_id: str) -> dict:
    store = get_run_store(request)
    if store is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Run store is not configured")
    try:
        state = state_from_record(await store.get(run_id))
    except StorageUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if not isinstance(state, Complete):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Run has no completed plan to save")
    return {
        "meal_plan": state.payload.get("mealPlan") or [],
        "nutritional_targets": state.payload.get("nutritionalTargets"),
        "shopping_list": state.payload.get("shoppingList"),
    }


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SavedPlanResponse,
    dependencies=[Depends(require_database)],
)
async def create_saved_plan(
    payload: SavePlanRequest,
    request: Request,
    principal=Depends(get_current_principal),
):
    if payload.mealPlan:
        body = {
            "meal_plan": [day.model_dump(mode="json") for day in payload.mealPlan],
            "nutritional_targets": payload.nutritionalTargets.model_dump() if payload.nutritionalTargets else None,
            "shopping_list": payload.shoppingList,
        }
    elif payload.runId:
        body = await _plan_body_from_run(request, payload.runId)
    else:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="mealPlan or runId is required")

    async with db.get_session() as session:
        try:
            plan = await saved_plans.save_plan(
                session,
                user_id=principal.get("sub"),
                name=payload.name,
                profile=payload.profile,
                source_run_id=payload.runId,
                **body,
            )
        except InvalidInput as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        return SavedPlanResponse(**saved_plans.serialize_plan(plan))


@router.get("", response_model=List[SavedPlanSummary], dependencies=[Depends(require_database)])
async def list_saved_plans(principal=Depends(get_current_principal)):
    async with db.get_session() as session:
        plans = await saved_plans.list_plans(session, principal.get("sub"))
        return [SavedPlanSummary(**saved_plans.serialize_plan(p, include_body=False)) for p in plans]


@router.get("/active", response_model=Optional[SavedPlanResponse], dependencies=[Depends(require_database)])
async def get_active_saved_plan(principal=Depends(get_current_principal)):
    async with db.get_session() as session:
        plan = await saved_plans.get_active_plan(session, principal.get("sub"))
        return SavedPlanResponse(**saved_plans.serialize_plan(plan)) if plan else None


@router.post("/{plan_id}/load", response_model=LoadPlanResponse, dependencies=[Depends(require_database)])
async def load_saved_plan(
    plan_id: str,
    payload: Optional[LoadPlanRequest] = None,
    principal=Depends(get_current_principal),
):
    selected_day = payload.selectedDay if payload else None
    async with db.get_session() as session:
        try:
            plan, day = await saved_plans.load_plan(
                session,
                user_id=principal.get("sub"),
                plan_id=plan_id,
                selected_day=selected_day,
            )
        except PlanNotFound as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        return LoadPlanResponse(plan=SavedPlanResponse(**saved_plans.serialize_plan(plan)), selectedDay=day)


@router.patch("/{plan_id}", response_model=SavedPlanSummary, dependencies=[Depends(require_database)])
async def rename_saved_plan(
    plan_id: str,
    payload: RenamePlanRequest,
    principal=Depends(get_current_principal),
):
    async with db.get_session() as session:
        try:
            plan = await saved_plans.rename_plan(
                session,
                user_id=principal.get("sub"),
                plan_id=plan_id,
                name=payload.name,
            )
        except InvalidInput as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        except PlanNotFound as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        return SavedPlanSummary(**saved_plans.serialize_plan(plan, include_body=False))


@router.delete("/{plan_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[Depends(require_database)])
async def delete_saved_plan(plan_id: str, principal=Depends(get_current_principal)):
    async with db.get_session() as session:
        try:
            await saved_plans.delete_plan(session, user_id=principal.get("sub"), plan_id=plan_id)
        except PlanNotFound as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
