"""Initial schema for Agentos.

Creates the sessions table and its status enums.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

lifecycle_status = sa.Enum("creating", "ready", "failed", "deleting", name="lifecyclestatus")
setup_status = sa.Enum(
    "pending",
    "creating_worktree",
    "init_container",
    "init_submodules",
    "installing_deps",
    "starting_session",
    "ready",
    "failed",
    name="setupstatus",
)
sandbox_status = sa.Enum("pending", "initializing", "ready", "failed", name="sandboxstatus")
container_health = sa.Enum("healthy", "unhealthy", name="containerhealth")


def upgrade() -> None:
    op.create_table(
        "sessions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("agent_type", sa.Text(), nullable=False, server_default="claude"),
        sa.Column("project_id", sa.Text(), nullable=False, server_default="uncategorized"),
        sa.Column("working_directory", sa.Text(), nullable=False),
        sa.Column("source_path", sa.Text(), nullable=True),
        sa.Column("use_worktree", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("lifecycle_status", lifecycle_status, nullable=False),
        sa.Column("setup_status", setup_status, nullable=True),
        sa.Column("setup_error", sa.Text(), nullable=True),
        sa.Column("worktree_path", sa.Text(), nullable=True),
        sa.Column("branch_name", sa.Text(), nullable=True),
        sa.Column("base_branch", sa.Text(), nullable=True),
        sa.Column("container_id", sa.Text(), nullable=True),
        sa.Column("container_health", container_health, nullable=True),
        sa.Column("sandbox_status", sandbox_status, nullable=True),
        sa.Column("parent_session_id", sa.Uuid(), nullable=True),
        sa.Column("extra_mounts", sa.JSON(), nullable=True),
        sa.Column("allowed_domains", sa.JSON(), nullable=True),
        sa.Column("auto_approve", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("initial_prompt", sa.Text(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
    )


def downgrade() -> None:
    op.drop_table("sessions")
    bind = op.get_bind()
    for enum_type in (container_health, sandbox_status, setup_status, lifecycle_status):
        enum_type.drop(bind, checkfirst=True)
