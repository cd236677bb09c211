"""Session state machines for the Agentos orchestrator.

This module holds the authoritative transition tables for the coarse
session lifecycle and the fine-grained setup progress, the guards used by
every mutating entry point, and LifecycleStateMachine which applies
lifecycle transitions to the store as compare-and-set updates.

There is no edge out of ``deleting``: any operation racing a delete loses
because its guarded UPDATE no longer matches.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from agentos.database.models.session import LifecycleStatus, Session, SetupStatus
from agentos.database.queries.session import compare_and_set_lifecycle, get_session
from agentos.errors import LifecycleConflictError, SessionNotFoundError

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]


class InvalidTransitionError(LifecycleConflictError):
    """Raised when an invalid state transition is attempted.

    Attributes:
        current: The current status.
        target: The attempted target status.
        session_id: The ID of the session that failed to transition.
    """

    def __init__(
        self,
        current: LifecycleStatus | SetupStatus,
        target: LifecycleStatus | SetupStatus,
        session_id: str | None = None,
    ):
        self.current = current
        self.target = target
        self.session_id = session_id
        msg = f"Invalid transition from {current.value} to {target.value}"
        if session_id:
            msg += f" for session {session_id}"
        super().__init__(msg)


LIFECYCLE_TRANSITIONS: dict[LifecycleStatus, set[LifecycleStatus]] = {
    LifecycleStatus.creating: {
        LifecycleStatus.ready,
        LifecycleStatus.failed,
        LifecycleStatus.deleting,
    },
    LifecycleStatus.ready: {LifecycleStatus.deleting, LifecycleStatus.failed},
    # Reboot re-enters creating
    LifecycleStatus.failed: {LifecycleStatus.creating, LifecycleStatus.deleting},
    LifecycleStatus.deleting: set(),
}

SETUP_TRANSITIONS: dict[SetupStatus, set[SetupStatus]] = {
    SetupStatus.pending: {
        SetupStatus.creating_worktree,
        SetupStatus.init_container,
        SetupStatus.starting_session,
        SetupStatus.failed,
    },
    SetupStatus.creating_worktree: {
        SetupStatus.init_container,
        SetupStatus.init_submodules,
        SetupStatus.failed,
    },
    SetupStatus.init_container: {
        SetupStatus.init_submodules,
        SetupStatus.starting_session,
        SetupStatus.failed,
    },
    SetupStatus.init_submodules: {SetupStatus.installing_deps, SetupStatus.failed},
    SetupStatus.installing_deps: {SetupStatus.starting_session, SetupStatus.failed},
    SetupStatus.starting_session: {SetupStatus.ready, SetupStatus.failed},
    SetupStatus.ready: set(),
    SetupStatus.failed: {SetupStatus.pending},
}

TERMINAL_SETUP_STATES = frozenset({SetupStatus.ready, SetupStatus.failed})

SETUP_DISPLAY_MESSAGES: dict[SetupStatus, str] = {
    SetupStatus.pending: "Setting up session...",
    SetupStatus.creating_worktree: "Creating worktree...",
    SetupStatus.init_container: "Starting sandbox...",
    SetupStatus.init_submodules: "Initializing submodules...",
    SetupStatus.installing_deps: "Installing dependencies...",
    SetupStatus.starting_session: "Starting session...",
    SetupStatus.ready: "Ready",
    SetupStatus.failed: "Setup failed",
}


def validate_transition(current: LifecycleStatus, target: LifecycleStatus) -> bool:
    """Validate if a lifecycle transition is allowed."""
    return target in LIFECYCLE_TRANSITIONS.get(current, set())


def validate_setup_transition(current: SetupStatus, target: SetupStatus) -> bool:
    """Validate if a setup progress transition is allowed."""
    return target in SETUP_TRANSITIONS.get(current, set())


def sources_for(target: LifecycleStatus) -> set[LifecycleStatus]:
    """All lifecycle states from which ``target`` is reachable."""
    return {state for state, targets in LIFECYCLE_TRANSITIONS.items() if target in targets}


def require_ready(row: Session, operation: str) -> None:
    """Guard for operations that assume a provisioned session.

    Raises:
        LifecycleConflictError: If the session is not ready.
    """
    if row.lifecycle_status != LifecycleStatus.ready:
        raise LifecycleConflictError(
            f"Cannot {operation} session in '{row.lifecycle_status.value}' state",
            details={"lifecycle_status": row.lifecycle_status.value},
        )


def require_deletable(row: Session) -> None:
    """Guard for deletion.

    Only a delete already in flight is refused. A session still in setup may
    be deleted; its pipeline notices on its next step and rolls back what it
    created.

    Raises:
        LifecycleConflictError: If the session is already deleting.
    """
    if row.lifecycle_status == LifecycleStatus.deleting:
        raise LifecycleConflictError(
            "Session is already being deleted",
            details={"lifecycle_status": row.lifecycle_status.value},
        )


class LifecycleStateMachine:
    """Applies lifecycle transitions to the session store.

    Each transition is a single guarded UPDATE, so two concurrent callers
    can never both succeed in moving the same session out of a state.
    """

    def __init__(self, session_factory: SessionFactory):
        """Initialize the lifecycle state machine.

        Args:
            session_factory: Factory for fresh AsyncSession instances.
        """
        self.session_factory = session_factory
        self.logger = logger.bind(component="LifecycleStateMachine")

    async def transition(
        self,
        session_id: UUID,
        target: LifecycleStatus,
        **extra: Any,
    ) -> Session:
        """Transition a session to a new lifecycle state.

        Args:
            session_id: UUID of the session to transition.
            target: Target lifecycle state.
            **extra: Extra columns written atomically with the state.

        Returns:
            The updated Session.

        Raises:
            SessionNotFoundError: If the session does not exist.
            InvalidTransitionError: If the session is not in a state from
                which ``target`` is reachable.
        """
        async with self.session_factory() as db:
            row = await compare_and_set_lifecycle(
                db, session_id, sources_for(target), target, **extra
            )

        if row is None:
            async with self.session_factory() as db:
                current = await get_session(db, session_id)
            if current is None:
                raise SessionNotFoundError(str(session_id))
            raise InvalidTransitionError(
                current.lifecycle_status, target, str(session_id)
            )

        self.logger.info(
            "session_transition",
            session_id=str(session_id),
            to_status=target.value,
        )
        return row

    async def try_transition(
        self,
        session_id: UUID,
        target: LifecycleStatus,
        **extra: Any,
    ) -> Session | None:
        """Like transition() but returns None instead of raising on a lost race."""
        try:
            return await self.transition(session_id, target, **extra)
        except (InvalidTransitionError, SessionNotFoundError) as e:
            self.logger.warning(
                "session_transition_skipped",
                session_id=str(session_id),
                to_status=target.value,
                reason=str(e),
            )
            return None
