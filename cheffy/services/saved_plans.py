from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidInput, PlanNotFound
from ..models import SavedPlan

logger = logging.getLogger(__name__)

PLAN_ID_PREFIX = "plan_"


def new_plan_id() -> str:
    return f"{PLAN_ID_PREFIX}{uuid.uuid4().hex}"


def clamp_selected_day(selected_day: Optional[int], day_count: int) -> int:
    """Selected day for a plan of ``day_count`` days; anything out of range becomes day 1."""
    if selected_day is None or day_count < 1 or not 1 <= selected_day <= day_count:
        return 1
    return selected_day


def _default_name(now: datetime) -> str:
    return f"Meal plan {now.strftime('%Y-%m-%d %H:%M')}"


async def save_plan(
    session: AsyncSession,
    *,
    user_id: str,
    name: Optional[str],
    meal_plan: List[Dict[str, Any]],
    nutritional_targets: Optional[Dict[str, Any]] = None,
    shopping_list: Optional[Dict[str, Any]] = None,
    profile: Optional[Dict[str, Any]] = None,
    source_run_id: Optional[str] = None,
) -> SavedPlan:
    if not meal_plan:
        raise InvalidInput("A saved plan needs at least one day")
    now = datetime.now(timezone.utc)
    plan = SavedPlan(
        plan_id=new_plan_id(),
        user_id=user_id,
        name=(name or "").strip() or _default_name(now),
        meal_plan=meal_plan,
        nutritional_targets=nutritional_targets,
        shopping_list=shopping_list,
        profile=profile,
        source_run_id=source_run_id,
        is_active=False,
        created_at=now,
        updated_at=now,
    )
    session.add(plan)
    await session.commit()
    logger.info("Saved plan %s for user=%s days=%d", plan.plan_id, user_id, plan.day_count)
    return plan


async def list_plans(session: AsyncSession, user_id: str) -> List[SavedPlan]:
    stmt = (
        select(SavedPlan)
        .where(SavedPlan.user_id == user_id)
        .order_by(SavedPlan.created_at.desc(), SavedPlan.plan_id.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars())


async def get_plan(session: AsyncSession, user_id: str, plan_id: str) -> SavedPlan:
    stmt = select(SavedPlan).where(SavedPlan.user_id == user_id, SavedPlan.plan_id == plan_id)
    plan = (await session.execute(stmt)).scalar_one_or_none()
    if plan is None:
        raise PlanNotFound(f"Plan {plan_id} not found")
    return plan


async def get_active_plan(session: AsyncSession, user_id: str) -> Optional[SavedPlan]:
    stmt = select(SavedPlan).where(SavedPlan.user_id == user_id, SavedPlan.is_active.is_(True))
    return (await session.execute(stmt)).scalars().first()


async def load_plan(
    session: AsyncSession,
    *,
    user_id: str,
    plan_id: str,
    selected_day: Optional[int] = None,
) -> Tuple[SavedPlan, int]:
    """Make ``plan_id`` the single active plan and return the day to show."""
    plan = await get_plan(session, user_id, plan_id)
    await session.execute(
        update(SavedPlan)
        .where(SavedPlan.user_id == user_id, SavedPlan.plan_id != plan_id)
        .values(is_active=False)
    )
    plan.is_active = True
    await session.commit()
    day = clamp_selected_day(selected_day, plan.day_count)
    if selected_day is not None and day != selected_day:
        logger.info("Selected day %s out of range for %s (%d days); using day 1", selected_day, plan_id, plan.day_count)
    return plan, day


async def rename_plan(session: AsyncSession, *, user_id: str, plan_id: str, name: str) -> SavedPlan:
    cleaned = (name or "").strip()
    if not cleaned:
        raise InvalidInput("Plan name cannot be empty")
    plan = await get_plan(session, user_id, plan_id)
    plan.name = cleaned
    await session.commit()
    return plan


async def delete_plan(session: AsyncSession, *, user_id: str, plan_id: str) -> None:
    plan = await get_plan(session, user_id, plan_id)
    await session.delete(plan)
    await session.commit()
    logger.info("Deleted plan %s for user=%s", plan_id, user_id)


def serialize_plan(plan: SavedPlan, *, include_body: bool = True) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "planId": plan.plan_id,
        "name": plan.name,
        "createdAt": plan.created_at,
        "dayCount": plan.day_count,
        "isActive": bool(plan.is_active),
        "sourceRunId": plan.source_run_id,
    }
    if include_body:
        payload["mealPlan"] = plan.meal_plan or []
        payload["nutritionalTargets"] = plan.nutritional_targets
        payload["shoppingList"] = plan.shopping_list
    return payload
