"""Agent session model for Agentos.

Defines the Session table and the closed status enums that make up the
session lifecycle, setup progress, and sandbox state.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from agentos.database.models.base import Base, TimestampMixin


class LifecycleStatus(enum.Enum):
    """Coarse-grained session state gating which operations are permitted.

    States:
        creating: Setup pipeline owns the session.
        ready: Provisioned; shared-read by attach, fork, and delete flows.
        failed: Provisioning failed or the process died.
        deleting: Deletion in progress; no path leads back.
    """

    creating = "creating"
    ready = "ready"
    failed = "failed"
    deleting = "deleting"


class SetupStatus(enum.Enum):
    """Fine-grained progress marker within the setup pipeline."""

    pending = "pending"
    creating_worktree = "creating_worktree"
    init_container = "init_container"
    init_submodules = "init_submodules"
    installing_deps = "installing_deps"
    starting_session = "starting_session"
    ready = "ready"
    failed = "failed"


class SandboxStatus(enum.Enum):
    """Sandbox provisioning state for auto-approved sessions."""

    pending = "pending"
    initializing = "initializing"
    ready = "ready"
    failed = "failed"


class ContainerHealth(enum.Enum):
    """Result of the most recent container health probe."""

    healthy = "healthy"
    unhealthy = "unhealthy"


class Session(TimestampMixin, Base):
    """A single agent session.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        name: Display name.
        agent_type: Agent CLI identifier (e.g. "claude").
        project_id: Owning project identifier.
        working_directory: Directory the agent process runs in.
        source_path: Directory the session was requested for (pre-setup
            working directory, restored by rollback).
        use_worktree: Whether setup provisions a dedicated worktree.
        lifecycle_status: Current LifecycleStatus.
        setup_status: Current SetupStatus (None if no pipeline ran).
        setup_error: Human-readable cause when setup failed.
        worktree_path: Git worktree path, possibly shared with siblings.
        branch_name: Branch checked out in the worktree.
        base_branch: Branch the worktree branch was created from.
        container_id: Sandbox container id.
        container_health: Result of the last post-start health probe.
        sandbox_status: Sandbox provisioning state.
        parent_session_id: Parent in the fork tree.
        extra_mounts: Validated extra mounts as a JSON list.
        allowed_domains: Validated egress domains as a JSON list.
        auto_approve: Unattended execution inside a sandbox.
        initial_prompt: Prompt passed to the agent on start.
        deleted_at: Soft-delete timestamp.
    """

    __tablename__ = "sessions"

    name: Mapped[str] = mapped_column(Text, nullable=False)
    agent_type: Mapped[str] = mapped_column(Text, nullable=False, default="claude")
    project_id: Mapped[str] = mapped_column(Text, nullable=False, default="uncategorized")
    working_directory: Mapped[str] = mapped_column(Text, nullable=False)
    source_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    use_worktree: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    lifecycle_status: Mapped[LifecycleStatus] = mapped_column(
        default=LifecycleStatus.creating,
        nullable=False,
    )
    setup_status: Mapped[SetupStatus | None] = mapped_column(nullable=True)
    setup_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    worktree_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    branch_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    base_branch: Mapped[str | None] = mapped_column(Text, nullable=True)
    container_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    container_health: Mapped[ContainerHealth | None] = mapped_column(nullable=True)
    sandbox_status: Mapped[SandboxStatus | None] = mapped_column(nullable=True)

    parent_session_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    extra_mounts: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    allowed_domains: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    auto_approve: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    initial_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def tmux_name(self) -> str:
        """Terminal multiplexer session name."""
        return f"{self.agent_type}-{self.id}"
