"""Session CRUD query functions for Agentos.

Provides async functions for creating, reading, and updating Session
records. Every write runs inside ``async with session.begin()`` on a fresh
AsyncSession, so multi-field updates commit atomically or not at all.
Lifecycle writes are compare-and-set: the WHERE clause carries the set of
states the row may currently be in, and the caller learns from the return
value whether it won.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agentos.database.models.session import (
    ContainerHealth,
    LifecycleStatus,
    SandboxStatus,
    Session,
    SetupStatus,
)

logger = structlog.get_logger(__name__)

# Sessions in these states hold no claim on a shared worktree
INACTIVE_LIFECYCLE = (LifecycleStatus.failed, LifecycleStatus.deleting)


async def create_session(
    session: AsyncSession,
    name: str,
    working_directory: str,
    project_id: str = "uncategorized",
    agent_type: str = "claude",
    lifecycle_status: LifecycleStatus = LifecycleStatus.creating,
    setup_status: SetupStatus | None = None,
    auto_approve: bool = False,
    extra_mounts: list[dict[str, Any]] | None = None,
    allowed_domains: list[str] | None = None,
    parent_session_id: UUID | None = None,
    initial_prompt: str | None = None,
    worktree_path: str | None = None,
    branch_name: str | None = None,
    base_branch: str | None = None,
    source_path: str | None = None,
    use_worktree: bool = False,
) -> Session:
    """Create a new session row.

    Args:
        session: Fresh async database session.
        name: Display name.
        working_directory: Directory the agent process will run in.
        project_id: Owning project identifier.
        agent_type: Agent CLI identifier.
        lifecycle_status: Initial lifecycle state.
        setup_status: Initial setup state (None when no pipeline will run).
        auto_approve: Request sandboxed unattended execution.
        extra_mounts: Validated extra mounts.
        allowed_domains: Validated egress domains.
        parent_session_id: Fork parent, if any.
        initial_prompt: Prompt passed to the agent on start.
        worktree_path: Shared worktree path for sibling sessions.
        branch_name: Branch of the shared worktree.
        base_branch: Requested base branch (or that of the shared worktree).
        source_path: Pre-setup working directory (defaults to working_directory).
        use_worktree: Whether setup provisions a dedicated worktree.

    Returns:
        The newly created Session instance.
    """
    row = Session(
        name=name,
        working_directory=working_directory,
        project_id=project_id,
        agent_type=agent_type,
        lifecycle_status=lifecycle_status,
        setup_status=setup_status,
        auto_approve=auto_approve,
        extra_mounts=extra_mounts,
        allowed_domains=allowed_domains,
        parent_session_id=parent_session_id,
        initial_prompt=initial_prompt,
        worktree_path=worktree_path,
        branch_name=branch_name,
        base_branch=base_branch,
        source_path=source_path or working_directory,
        use_worktree=use_worktree,
    )

    async with session.begin():
        session.add(row)
        await session.flush()
        await session.refresh(row)

    logger.info(
        "session_created",
        session_id=str(row.id),
        lifecycle_status=row.lifecycle_status.value,
        auto_approve=auto_approve,
        parent_session_id=str(parent_session_id) if parent_session_id else None,
    )

    return row


async def get_session(
    session: AsyncSession,
    session_id: UUID,
    include_deleted: bool = False,
) -> Session | None:
    """Retrieve a session by ID.

    Args:
        session: Active async database session.
        session_id: UUID of the session to retrieve.
        include_deleted: Also return soft-deleted rows.

    Returns:
        The Session instance if found, None otherwise.
    """
    stmt = select(Session).where(Session.id == session_id)
    if not include_deleted:
        stmt = stmt.where(Session.deleted_at.is_(None))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_sessions(
    session: AsyncSession,
    lifecycle_filter: Iterable[LifecycleStatus] | None = None,
    project_id: str | None = None,
) -> list[Session]:
    """List live (not soft-deleted) sessions.

    Args:
        session: Active async database session.
        lifecycle_filter: Optional lifecycle states to restrict to.
        project_id: Optional project to restrict to.

    Returns:
        Matching sessions, newest first.
    """
    stmt = select(Session).where(Session.deleted_at.is_(None))

    if lifecycle_filter is not None:
        stmt = stmt.where(Session.lifecycle_status.in_(list(lifecycle_filter)))

    if project_id is not None:
        stmt = stmt.where(Session.project_id == project_id)

    stmt = stmt.order_by(Session.created_at.desc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_active_siblings_by_worktree(
    session: AsyncSession,
    worktree_path: str,
    exclude_id: UUID | None = None,
) -> list[Session]:
    """Return active sessions referencing a worktree.

    Active means not soft-deleted and not failed or deleting.

    Args:
        session: Active async database session.
        worktree_path: Worktree path to look up.
        exclude_id: Session to leave out (usually the one being deleted).

    Returns:
        Sibling sessions still holding a claim on the worktree.
    """
    stmt = select(Session).where(
        Session.worktree_path == worktree_path,
        Session.deleted_at.is_(None),
        Session.lifecycle_status.not_in(INACTIVE_LIFECYCLE),
    )
    if exclude_id is not None:
        stmt = stmt.where(Session.id != exclude_id)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def _update_fields(
    session: AsyncSession,
    session_id: UUID,
    values: dict[str, Any],
    allowed_lifecycle: Iterable[LifecycleStatus] | None = None,
) -> Session | None:
    """Apply one UPDATE in one transaction and return the refreshed row.

    Returns None when the row does not exist or the lifecycle guard did not
    match.
    """
    async with session.begin():
        stmt = (
            update(Session)
            .where(Session.id == session_id, Session.deleted_at.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if allowed_lifecycle is not None:
            stmt = stmt.where(Session.lifecycle_status.in_(list(allowed_lifecycle)))

        result = await session.execute(stmt)
        if result.rowcount != 1:
            return None

        row = await session.get(Session, session_id, populate_existing=True)
    return row


async def compare_and_set_lifecycle(
    session: AsyncSession,
    session_id: UUID,
    allowed_from: Iterable[LifecycleStatus],
    target: LifecycleStatus,
    **extra: Any,
) -> Session | None:
    """Atomically move a session to ``target`` if it is in ``allowed_from``.

    Args:
        session: Fresh async database session.
        session_id: Session to transition.
        allowed_from: States the row must currently be in.
        target: New lifecycle state.
        **extra: Additional columns written in the same UPDATE.

    Returns:
        The updated Session, or None if the guard did not match.
    """
    row = await _update_fields(
        session,
        session_id,
        {"lifecycle_status": target, **extra},
        allowed_lifecycle=allowed_from,
    )
    if row is None:
        logger.debug(
            "lifecycle_cas_missed",
            session_id=str(session_id),
            target=target.value,
        )
    return row


async def update_setup_status(
    session: AsyncSession,
    session_id: UUID,
    setup_status: SetupStatus,
    setup_error: str | None = None,
) -> Session | None:
    """Record setup pipeline progress.

    Only applies while the session is still ``creating``; a session flipped
    to ``deleting`` underneath the pipeline is left untouched.
    """
    values: dict[str, Any] = {"setup_status": setup_status}
    if setup_error is not None:
        values["setup_error"] = setup_error
    return await _update_fields(
        session, session_id, values, allowed_lifecycle=(LifecycleStatus.creating,)
    )


async def set_worktree(
    session: AsyncSession,
    session_id: UUID,
    worktree_path: str,
    branch_name: str,
    base_branch: str,
) -> Session | None:
    """Write worktree path, branch, base branch, and working directory together."""
    row = await _update_fields(
        session,
        session_id,
        {
            "worktree_path": worktree_path,
            "branch_name": branch_name,
            "base_branch": base_branch,
            "working_directory": worktree_path,
        },
    )
    logger.info(
        "session_worktree_set",
        session_id=str(session_id),
        worktree_path=worktree_path,
        branch_name=branch_name,
    )
    return row


async def set_sandbox(
    session: AsyncSession,
    session_id: UUID,
    sandbox_status: SandboxStatus,
    container_id: str | None = None,
    container_health: ContainerHealth | None = None,
) -> Session | None:
    """Record sandbox state.

    Raises:
        ValueError: If asked to mark the sandbox ready without a container
            that passed its health probe.
    """
    if sandbox_status == SandboxStatus.ready and (
        container_id is None or container_health != ContainerHealth.healthy
    ):
        raise ValueError(
            "sandbox_status=ready requires a container with a healthy probe result"
        )

    return await _update_fields(
        session,
        session_id,
        {
            "sandbox_status": sandbox_status,
            "container_id": container_id,
            "container_health": container_health,
        },
    )


async def clear_isolation(
    session: AsyncSession,
    session_id: UUID,
    working_directory: str,
) -> Session | None:
    """Reset worktree and container fields to their pre-setup values.

    The requested base branch is kept so a reboot can provision again.
    """
    return await _update_fields(
        session,
        session_id,
        {
            "worktree_path": None,
            "branch_name": None,
            "container_id": None,
            "container_health": None,
            "working_directory": working_directory,
        },
    )


async def rename_session(
    session: AsyncSession,
    session_id: UUID,
    name: str,
    branch_name: str | None = None,
) -> Session | None:
    """Rename a ready session (and record its renamed branch)."""
    values: dict[str, Any] = {"name": name}
    if branch_name is not None:
        values["branch_name"] = branch_name
    return await _update_fields(
        session, session_id, values, allowed_lifecycle=(LifecycleStatus.ready,)
    )


async def reset_for_reboot(
    session: AsyncSession,
    session_id: UUID,
    working_directory: str,
) -> Session | None:
    """Move a failed session back to ``creating`` with a fresh setup state."""
    return await _update_fields(
        session,
        session_id,
        {
            "lifecycle_status": LifecycleStatus.creating,
            "setup_status": SetupStatus.pending,
            "setup_error": None,
            "sandbox_status": None,
            "container_id": None,
            "container_health": None,
            "working_directory": working_directory,
        },
        allowed_lifecycle=(LifecycleStatus.failed,),
    )


async def soft_delete_session(
    session: AsyncSession,
    session_id: UUID,
) -> bool:
    """Mark a session deleted.

    Returns:
        True if a live row was soft-deleted.
    """
    row = await _update_fields(
        session,
        session_id,
        {"deleted_at": datetime.now(timezone.utc)},
    )
    if row is not None:
        logger.info("session_soft_deleted", session_id=str(session_id))
    return row is not None
