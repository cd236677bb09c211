"""Startup recovery and store consistency validation.

Pipeline tasks and deletions do not survive a process restart. On startup
the store is reconciled with reality:

- ``deleting`` sessions: the deletion is finished.
- ``creating`` sessions: their resources are released and they are marked
  ``failed`` ("Server restarted during setup").
- ``ready`` sessions whose agent process is gone: released and ``failed``.

Consistency validation then fails any ``ready`` session that claims a
ready sandbox without a container, or that is auto-approved without a
worktree.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel

from agentos.database.models.session import (
    LifecycleStatus,
    SandboxStatus,
    Session,
    SetupStatus,
)
from agentos.database.queries.session import (
    clear_isolation,
    compare_and_set_lifecycle,
    get_active_siblings_by_worktree,
    list_sessions,
)
from agentos.logging import get_logger
from agentos.orchestrator.session_service import SessionService

RESTARTED_DURING_SETUP = "Server restarted during setup"
PROCESS_NOT_RUNNING = "Session process is no longer running"


class RecoveryStats(BaseModel):
    """Counts from one recovery pass."""

    deleting_cleaned: int = 0
    stuck_recovered: int = 0
    checked: int = 0
    alive: int = 0
    dead: int = 0
    inconsistent: int = 0


class SessionRecovery:
    """Reconciles persisted sessions with running resources."""

    def __init__(self, service: SessionService) -> None:
        self.service = service
        self.session_factory = service.session_factory
        self.logger = get_logger(__name__)

    async def _by_status(self, status: LifecycleStatus) -> list[Session]:
        async with self.session_factory() as db:
            return await list_sessions(db, lifecycle_filter=[status])

    async def _release(self, row: Session) -> None:
        """Destroy the container and, unless shared, the worktree."""
        sid = str(row.id)
        service = self.service

        try:
            await service.processes.kill_session(row.tmux_name)
        except Exception as e:
            self.logger.warning("process_kill_failed", session_id=sid, error=str(e))

        if row.container_id:
            await service.sandbox.destroy_container(row.container_id, sid)

        if row.worktree_path and service.worktrees.is_managed_worktree(Path(row.worktree_path)):
            async with self.session_factory() as db:
                siblings = await get_active_siblings_by_worktree(
                    db, row.worktree_path, exclude_id=row.id
                )
            if siblings:
                self.logger.info(
                    "worktree_kept_for_siblings",
                    session_id=sid,
                    path=row.worktree_path,
                    sibling_count=len(siblings),
                )
            else:
                try:
                    # The branch keeps any committed work
                    await service.worktrees.delete_worktree(Path(row.worktree_path))
                except Exception as e:
                    self.logger.error(
                        "worktree_delete_failed",
                        session_id=sid,
                        path=row.worktree_path,
                        error=str(e),
                        message="Orphaned resource - manual cleanup required",
                    )

        async with self.session_factory() as db:
            await clear_isolation(db, row.id, row.source_path or row.working_directory)

    async def _fail(
        self,
        row: Session,
        allowed_from: LifecycleStatus,
        reason: str,
        setup_failed: bool = False,
    ) -> bool:
        extra: dict[str, object] = {"setup_error": reason}
        if setup_failed:
            extra["setup_status"] = SetupStatus.failed
        if row.auto_approve:
            extra["sandbox_status"] = SandboxStatus.failed

        async with self.session_factory() as db:
            updated = await compare_and_set_lifecycle(
                db, row.id, (allowed_from,), LifecycleStatus.failed, **extra
            )
        if updated is None:
            return False

        await self.service.hub.update_status(
            str(row.id),
            status="dead",
            lifecycle_status=LifecycleStatus.failed,
            setup_status=SetupStatus.failed if setup_failed else None,
            setup_error=reason,
        )
        return True

    async def recover(self) -> RecoveryStats:
        """Run a full startup recovery pass."""
        stats = RecoveryStats()

        for row in await self._by_status(LifecycleStatus.deleting):
            try:
                await self.service.finish_delete(row)
                stats.deleting_cleaned += 1
            except Exception as e:
                self.logger.error(
                    "recovery_delete_failed",
                    session_id=str(row.id),
                    error=str(e),
                    error_type=type(e).__name__,
                )

        for row in await self._by_status(LifecycleStatus.creating):
            self.logger.warning("session_stuck_in_setup", session_id=str(row.id))
            await self._release(row)
            if await self._fail(
                row, LifecycleStatus.creating, RESTARTED_DURING_SETUP, setup_failed=True
            ):
                stats.stuck_recovered += 1

        for row in await self._by_status(LifecycleStatus.ready):
            stats.checked += 1
            if await self.service.processes.has_session(row.tmux_name):
                stats.alive += 1
                continue

            self.logger.warning("session_process_dead", session_id=str(row.id))
            if await self._fail(row, LifecycleStatus.ready, PROCESS_NOT_RUNNING):
                await self._release(row)
                stats.dead += 1

        stats.inconsistent = await self.validate_consistency()

        self.logger.info("recovery_complete", **stats.model_dump())
        return stats

    async def validate_consistency(self) -> int:
        """Fail ready sessions whose isolation fields contradict each other.

        Returns:
            Number of sessions marked failed
        """
        failed = 0
        for row in await self._by_status(LifecycleStatus.ready):
            reason: str | None = None
            if row.sandbox_status == SandboxStatus.ready and not row.container_id:
                reason = "Sandbox marked ready without a container"
            elif row.auto_approve and not row.worktree_path:
                reason = "Auto-approve session has no worktree"
            elif row.worktree_path and not (row.branch_name and row.base_branch):
                reason = "Worktree recorded without its branch"

            if reason is None:
                continue

            self.logger.error("session_inconsistent", session_id=str(row.id), reason=reason)
            if await self._fail(row, LifecycleStatus.ready, reason):
                await self._release(row)
                failed += 1
        return failed
