"""Integration tests for startup recovery.

Sessions are written straight into the store in the states a crashed
process would leave behind; recovery must reconcile each of them.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentos.database.models.session import (
    ContainerHealth,
    LifecycleStatus,
    SandboxStatus,
    Session,
    SetupStatus,
)
from agentos.database.queries.session import create_session, get_session, set_sandbox
from agentos.orchestrator.recovery import (
    PROCESS_NOT_RUNNING,
    RESTARTED_DURING_SETUP,
    SessionRecovery,
)
from agentos.orchestrator.session_service import SessionService
from agentos.orchestrator.status_hub import StatusHub

if TYPE_CHECKING:
    from conftest import FakeProcessBackend, FakeSandboxBackend, FakeWorktreeBackend

Factory = async_sessionmaker[AsyncSession]


async def _insert(factory: Factory, status: LifecycleStatus, **kwargs: Any) -> Session:
    working_directory = kwargs.pop("working_directory", "/src/app")
    async with factory() as db:
        return await create_session(
            db,
            name=f"{status.value} session",
            working_directory=working_directory,
            lifecycle_status=status,
            **kwargs,
        )


async def _reload(factory: Factory, row: Session, include_deleted: bool = False) -> Session:
    async with factory() as db:
        fetched = await get_session(db, row.id, include_deleted=include_deleted)
    assert fetched is not None
    return fetched


async def _with_container(factory: Factory, row: Session, container_id: str) -> None:
    async with factory() as db:
        await set_sandbox(
            db,
            row.id,
            SandboxStatus.ready,
            container_id=container_id,
            container_health=ContainerHealth.healthy,
        )


@pytest.fixture
def recovery(service: SessionService) -> SessionRecovery:
    return SessionRecovery(service)


@pytest.mark.asyncio
class TestRecover:
    async def test_interrupted_deletion_is_finished(
        self,
        recovery: SessionRecovery,
        session_factory: Factory,
        processes: FakeProcessBackend,
    ) -> None:
        row = await _insert(session_factory, LifecycleStatus.deleting)

        stats = await recovery.recover()

        assert stats.deleting_cleaned == 1
        assert row.tmux_name in processes.killed
        deleted = await _reload(session_factory, row, include_deleted=True)
        assert deleted.deleted_at is not None

    async def test_session_stuck_in_setup_is_released_and_failed(
        self,
        recovery: SessionRecovery,
        session_factory: Factory,
        worktrees: FakeWorktreeBackend,
        sandbox: FakeSandboxBackend,
        hub: StatusHub,
    ) -> None:
        worktree = str(worktrees.base_path / "repo-login")
        row = await _insert(
            session_factory,
            LifecycleStatus.creating,
            setup_status=SetupStatus.init_container,
            auto_approve=True,
            worktree_path=worktree,
            branch_name="feature/login",
            base_branch="main",
            source_path="/src/app",
            working_directory=worktree,
        )
        await _with_container(session_factory, row, "ctr-stuck")

        stats = await recovery.recover()

        assert stats.stuck_recovered == 1
        assert sandbox.destroyed == ["ctr-stuck"]
        assert worktrees.deleted == [(Path(worktree), False)]

        updated = await _reload(session_factory, row)
        assert updated.lifecycle_status == LifecycleStatus.failed
        assert updated.setup_status == SetupStatus.failed
        assert updated.setup_error == RESTARTED_DURING_SETUP
        assert updated.sandbox_status == SandboxStatus.failed
        assert updated.worktree_path is None
        assert updated.container_id is None
        assert updated.working_directory == "/src/app"
        assert hub.get_status(str(row.id)).status == "dead"

    async def test_ready_sessions_checked_against_running_processes(
        self,
        recovery: SessionRecovery,
        session_factory: Factory,
        processes: FakeProcessBackend,
    ) -> None:
        alive = await _insert(session_factory, LifecycleStatus.ready)
        dead = await _insert(session_factory, LifecycleStatus.ready)
        processes.running[alive.tmux_name] = (["claude"], Path("/src/app"))

        stats = await recovery.recover()

        assert stats.checked == 2
        assert stats.alive == 1
        assert stats.dead == 1
        assert (await _reload(session_factory, alive)).lifecycle_status == LifecycleStatus.ready
        failed = await _reload(session_factory, dead)
        assert failed.lifecycle_status == LifecycleStatus.failed
        assert failed.setup_error == PROCESS_NOT_RUNNING

    async def test_shared_worktree_kept_for_live_sibling(
        self,
        recovery: SessionRecovery,
        session_factory: Factory,
        worktrees: FakeWorktreeBackend,
        processes: FakeProcessBackend,
    ) -> None:
        worktree = str(worktrees.base_path / "repo-shared")
        shared = {
            "worktree_path": worktree,
            "branch_name": "feature/shared",
            "base_branch": "main",
        }
        dead = await _insert(session_factory, LifecycleStatus.ready, **shared)
        alive = await _insert(session_factory, LifecycleStatus.ready, **shared)
        processes.running[alive.tmux_name] = (["claude"], Path(worktree))

        await recovery.recover()

        assert worktrees.deleted == []
        assert (await _reload(session_factory, dead)).lifecycle_status == LifecycleStatus.failed
        assert (await _reload(session_factory, alive)).worktree_path == worktree

    async def test_nothing_to_do(self, recovery: SessionRecovery) -> None:
        stats = await recovery.recover()

        assert stats.model_dump() == {
            "deleting_cleaned": 0,
            "stuck_recovered": 0,
            "checked": 0,
            "alive": 0,
            "dead": 0,
            "inconsistent": 0,
        }


@pytest.mark.asyncio
class TestValidateConsistency:
    async def test_auto_approve_without_worktree_is_failed(
        self,
        recovery: SessionRecovery,
        session_factory: Factory,
        processes: FakeProcessBackend,
    ) -> None:
        row = await _insert(session_factory, LifecycleStatus.ready, auto_approve=True)
        processes.running[row.tmux_name] = (["claude"], Path("/src/app"))

        stats = await recovery.recover()

        assert stats.inconsistent == 1
        updated = await _reload(session_factory, row)
        assert updated.lifecycle_status == LifecycleStatus.failed
        assert updated.setup_error == "Auto-approve session has no worktree"
        assert updated.sandbox_status == SandboxStatus.failed
        assert row.tmux_name not in processes.running

    async def test_worktree_without_branch_is_failed(
        self, recovery: SessionRecovery, session_factory: Factory
    ) -> None:
        row = await _insert(session_factory, LifecycleStatus.ready, worktree_path="/wt/x")

        assert await recovery.validate_consistency() == 1
        assert (await _reload(session_factory, row)).setup_error == (
            "Worktree recorded without its branch"
        )

    async def test_consistent_session_untouched(
        self,
        recovery: SessionRecovery,
        session_factory: Factory,
        worktrees: FakeWorktreeBackend,
    ) -> None:
        row = await _insert(
            session_factory,
            LifecycleStatus.ready,
            auto_approve=True,
            worktree_path=str(worktrees.base_path / "repo-ok"),
            branch_name="feature/ok",
            base_branch="main",
        )
        await _with_container(session_factory, row, "ctr-ok")

        assert await recovery.validate_consistency() == 0
        assert (await _reload(session_factory, row)).lifecycle_status == LifecycleStatus.ready
