"""Create saved plans table.

Revision ID: 7c1d4e2a9b30
Revises:
Create Date: 2026-10-18 09:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "7c1d4e2a9b30"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    json_type = sa.JSON().with_variant(postgresql.JSONB, "postgresql")
    op.create_table(
        "saved_plans",
        sa.Column("plan_id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("meal_plan", json_type, nullable=False),
        sa.Column("nutritional_targets", json_type, nullable=True),
        sa.Column("shopping_list", json_type, nullable=True),
        sa.Column("profile", json_type, nullable=True),
        sa.Column("source_run_id", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    )
    op.create_index("ix_saved_plans_user_created", "saved_plans", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_saved_plans_user_created", table_name="saved_plans")
    op.drop_table("saved_plans")
