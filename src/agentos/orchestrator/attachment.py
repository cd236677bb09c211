"""Attachment coordinator: one attach per display slot at a time.

Attaching a display slot (a terminal pane) to a session mutates shared
terminal state, so two attaches to the same slot must never interleave. Each
slot has its own asyncio.Lock; a second request waits (bounded by
``attach_timeout_seconds``) until the first releases it. The lock is
released on every exit path.

Example usage:
    >>> coordinator = AttachmentCoordinator(session_factory, processes, TerminalConfig())
    >>> result = await coordinator.attach(session_id, slot="pane-1")
    >>> result.tmux_name
    'claude-4f1c...'
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

from pydantic import BaseModel

from agentos.config import TerminalConfig
from agentos.database.queries.session import get_session
from agentos.errors import (
    AttachmentBusyError,
    LifecycleConflictError,
    ProcessStartError,
    SessionNotFoundError,
)
from agentos.logging import get_logger
from agentos.orchestrator.state_machine import (
    SETUP_DISPLAY_MESSAGES,
    TERMINAL_SETUP_STATES,
    SessionFactory,
    require_ready,
)
from agentos.pipeline.terminal import ProcessBackend


class AttachResult(BaseModel):
    """Where the slot is now attached."""

    session_id: str
    slot: str
    tmux_name: str
    socket_name: str


class AttachmentCoordinator:
    """Serializes attach operations per display slot."""

    def __init__(
        self,
        session_factory: SessionFactory,
        processes: ProcessBackend,
        config: TerminalConfig | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.processes = processes
        self.config = config or TerminalConfig()
        self.logger = get_logger(__name__)
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, str] = {}

    def _lock_for(self, slot: str) -> asyncio.Lock:
        lock = self._locks.get(slot)
        if lock is None:
            lock = self._locks[slot] = asyncio.Lock()
        return lock

    def holder(self, slot: str) -> str | None:
        """Session currently attaching in ``slot``, if any."""
        return self._holders.get(slot)

    @asynccontextmanager
    async def hold(self, slot: str, session_id: str) -> AsyncIterator[None]:
        """Hold the slot lock for the duration of the block.

        Raises:
            AttachmentBusyError: If the slot stays locked past the timeout
        """
        lock = self._lock_for(slot)
        timeout = self.config.attach_timeout_seconds
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise AttachmentBusyError(
                f"Display slot '{slot}' is busy; try again",
                details={"slot": slot, "holder": self._holders.get(slot)},
            ) from e

        self._holders[slot] = session_id
        try:
            yield
        finally:
            self._holders.pop(slot, None)
            lock.release()

    async def attach(self, session_id: UUID, slot: str) -> AttachResult:
        """Attach ``slot`` to a session's running process.

        Session state is re-read inside the lock so the decision uses the
        latest lifecycle and setup status.

        Raises:
            AttachmentBusyError: If the slot is busy past the timeout
            SessionNotFoundError: If the session does not exist
            LifecycleConflictError: If setup is still running (message is the
                setup step's display text) or the session is not ready
            ProcessStartError: If the agent process is gone or switching fails
        """
        sid = str(session_id)
        async with self.hold(slot, sid):
            async with self.session_factory() as db:
                row = await get_session(db, session_id)
            if row is None:
                raise SessionNotFoundError(sid)

            if row.setup_status is not None and row.setup_status not in TERMINAL_SETUP_STATES:
                raise LifecycleConflictError(
                    SETUP_DISPLAY_MESSAGES[row.setup_status],
                    details={"setup_status": row.setup_status.value},
                )
            require_ready(row, "attach to")

            if not await self.processes.has_session(row.tmux_name):
                raise ProcessStartError(
                    "Session process is not running; reboot the session",
                    details={"tmux_session": row.tmux_name},
                )

            await self.processes.select_window(row.tmux_name, slot)

        self.logger.info("session_attached", session_id=sid, slot=slot)
        return AttachResult(
            session_id=sid,
            slot=slot,
            tmux_name=row.tmux_name,
            socket_name=self.config.socket_name,
        )
