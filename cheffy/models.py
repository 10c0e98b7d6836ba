from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, JSON, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class TimestampMixin:
    """Common created/updated timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


json_type = JSON().with_variant(JSONB, "postgresql")


class SavedPlan(Base, TimestampMixin):
    __tablename__ = "saved_plans"
    __table_args__ = (Index("ix_saved_plans_user_created", "user_id", "created_at"),)

    plan_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    meal_plan: Mapped[list] = mapped_column(json_type, nullable=False)
    nutritional_targets: Mapped[Optional[dict]] = mapped_column(json_type)
    shopping_list: Mapped[Optional[dict]] = mapped_column(json_type)
    profile: Mapped[Optional[dict]] = mapped_column(json_type)
    source_run_id: Mapped[Optional[str]] = mapped_column(String(64))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    @property
    def day_count(self) -> int:
        return len(self.meal_plan or [])

    def __repr__(self) -> str:
        return f"SavedPlan(plan_id={self.plan_id}, user_id={self.user_id}, name={self.name!r})"
