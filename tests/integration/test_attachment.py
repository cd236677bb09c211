"""Integration tests for the attachment coordinator."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentos.config import TerminalConfig
from agentos.database.models.session import LifecycleStatus, Session, SetupStatus
from agentos.database.queries.session import create_session
from agentos.errors import (
    AttachmentBusyError,
    LifecycleConflictError,
    ProcessStartError,
    SessionNotFoundError,
)
from agentos.orchestrator.attachment import AttachmentCoordinator

if TYPE_CHECKING:
    from conftest import FakeProcessBackend

Factory = async_sessionmaker[AsyncSession]


@pytest.fixture
def coordinator(
    session_factory: Factory, processes: FakeProcessBackend
) -> AttachmentCoordinator:
    return AttachmentCoordinator(
        session_factory,
        processes,
        TerminalConfig(socket_name="agentos-test", attach_timeout_seconds=0.2),
    )


async def _running_session(
    factory: Factory, processes: FakeProcessBackend, **kwargs
) -> Session:
    kwargs.setdefault("lifecycle_status", LifecycleStatus.ready)
    async with factory() as db:
        row = await create_session(db, name="s", working_directory="/src/app", **kwargs)
    processes.running[row.tmux_name] = (["claude"], Path("/src/app"))
    return row


@pytest.mark.asyncio
class TestAttach:
    async def test_attach_switches_slot_to_session(
        self,
        coordinator: AttachmentCoordinator,
        session_factory: Factory,
        processes: FakeProcessBackend,
    ) -> None:
        row = await _running_session(session_factory, processes)

        result = await coordinator.attach(row.id, "pane-1")

        assert result.session_id == str(row.id)
        assert result.tmux_name == row.tmux_name
        assert result.socket_name == "agentos-test"
        assert processes.selected == [(row.tmux_name, "pane-1")]
        assert coordinator.holder("pane-1") is None

    async def test_setup_in_progress_reports_step(
        self,
        coordinator: AttachmentCoordinator,
        session_factory: Factory,
        processes: FakeProcessBackend,
    ) -> None:
        row = await _running_session(
            session_factory,
            processes,
            lifecycle_status=LifecycleStatus.creating,
            setup_status=SetupStatus.installing_deps,
        )

        with pytest.raises(LifecycleConflictError, match="Installing dependencies"):
            await coordinator.attach(row.id, "pane-1")

    async def test_failed_session_is_not_attachable(
        self,
        coordinator: AttachmentCoordinator,
        session_factory: Factory,
        processes: FakeProcessBackend,
    ) -> None:
        row = await _running_session(
            session_factory,
            processes,
            lifecycle_status=LifecycleStatus.failed,
            setup_status=SetupStatus.failed,
        )

        with pytest.raises(LifecycleConflictError, match="failed"):
            await coordinator.attach(row.id, "pane-1")

    async def test_dead_process(
        self,
        coordinator: AttachmentCoordinator,
        session_factory: Factory,
        processes: FakeProcessBackend,
    ) -> None:
        row = await _running_session(session_factory, processes)
        processes.running.clear()

        with pytest.raises(ProcessStartError, match="reboot"):
            await coordinator.attach(row.id, "pane-1")

    async def test_missing_session_releases_slot(
        self,
        coordinator: AttachmentCoordinator,
        session_factory: Factory,
        processes: FakeProcessBackend,
    ) -> None:
        with pytest.raises(SessionNotFoundError):
            await coordinator.attach(uuid4(), "pane-1")

        row = await _running_session(session_factory, processes)
        result = await coordinator.attach(row.id, "pane-1")
        assert result.slot == "pane-1"


@pytest.mark.asyncio
class TestSlotLocking:
    async def test_busy_slot_times_out(self, coordinator: AttachmentCoordinator) -> None:
        async with coordinator.hold("pane-1", "holder-session"):
            assert coordinator.holder("pane-1") == "holder-session"
            with pytest.raises(AttachmentBusyError) as exc_info:
                await coordinator.attach(uuid4(), "pane-1")

        assert exc_info.value.details["holder"] == "holder-session"
        assert coordinator.holder("pane-1") is None

    async def test_attaches_to_one_slot_never_interleave(
        self,
        coordinator: AttachmentCoordinator,
        session_factory: Factory,
        processes: FakeProcessBackend,
    ) -> None:
        first = await _running_session(session_factory, processes)
        second = await _running_session(session_factory, processes)
        inside = 0
        overlap = 0

        async def slow_select(name: str, slot: str) -> None:
            nonlocal inside, overlap
            inside += 1
            overlap = max(overlap, inside)
            await asyncio.sleep(0.02)
            inside -= 1
            processes.selected.append((name, slot))

        processes.select_window = slow_select  # type: ignore[method-assign]

        await asyncio.gather(
            coordinator.attach(first.id, "pane-1"),
            coordinator.attach(second.id, "pane-1"),
        )

        assert overlap == 1
        assert len(processes.selected) == 2

    async def test_different_slots_are_independent(
        self,
        coordinator: AttachmentCoordinator,
        session_factory: Factory,
        processes: FakeProcessBackend,
    ) -> None:
        row = await _running_session(session_factory, processes)

        async with coordinator.hold("pane-1", "someone-else"):
            result = await coordinator.attach(row.id, "pane-2")

        assert result.slot == "pane-2"
