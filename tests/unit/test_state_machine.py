"""Unit tests for the session state machines.

Tests cover:
- Lifecycle and setup transition tables
- Guards for ready-only and delete operations
- Compare-and-set transitions through LifecycleStateMachine
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentos.database.models.session import LifecycleStatus, SetupStatus
from agentos.errors import LifecycleConflictError, SessionNotFoundError
from agentos.orchestrator.state_machine import (
    LIFECYCLE_TRANSITIONS,
    SETUP_DISPLAY_MESSAGES,
    SETUP_TRANSITIONS,
    InvalidTransitionError,
    LifecycleStateMachine,
    require_deletable,
    require_ready,
    sources_for,
    validate_setup_transition,
    validate_transition,
)


class TestLifecycleTable:
    def test_every_status_defined(self) -> None:
        assert set(LIFECYCLE_TRANSITIONS) == set(LifecycleStatus)

    def test_deleting_is_terminal(self) -> None:
        assert LIFECYCLE_TRANSITIONS[LifecycleStatus.deleting] == set()
        assert LifecycleStatus.deleting not in sources_for(LifecycleStatus.ready)
        assert LifecycleStatus.deleting not in sources_for(LifecycleStatus.failed)

    @pytest.mark.parametrize(
        "current,target,expected",
        [
            (LifecycleStatus.creating, LifecycleStatus.ready, True),
            (LifecycleStatus.creating, LifecycleStatus.failed, True),
            (LifecycleStatus.creating, LifecycleStatus.deleting, True),
            (LifecycleStatus.ready, LifecycleStatus.deleting, True),
            (LifecycleStatus.ready, LifecycleStatus.failed, True),
            (LifecycleStatus.failed, LifecycleStatus.creating, True),
            (LifecycleStatus.failed, LifecycleStatus.deleting, True),
            (LifecycleStatus.deleting, LifecycleStatus.ready, False),
            (LifecycleStatus.deleting, LifecycleStatus.failed, False),
            (LifecycleStatus.ready, LifecycleStatus.creating, False),
        ],
    )
    def test_validate_transition(
        self, current: LifecycleStatus, target: LifecycleStatus, expected: bool
    ) -> None:
        assert validate_transition(current, target) is expected

    def test_sources_for_deleting(self) -> None:
        assert sources_for(LifecycleStatus.deleting) == {
            LifecycleStatus.creating,
            LifecycleStatus.ready,
            LifecycleStatus.failed,
        }


class TestSetupTable:
    def test_every_status_defined(self) -> None:
        assert set(SETUP_TRANSITIONS) == set(SetupStatus)
        assert set(SETUP_DISPLAY_MESSAGES) == set(SetupStatus)

    def test_every_non_terminal_step_can_fail(self) -> None:
        for status, targets in SETUP_TRANSITIONS.items():
            if status not in (SetupStatus.ready, SetupStatus.failed):
                assert SetupStatus.failed in targets, status

    @pytest.mark.parametrize(
        "current,target,expected",
        [
            (SetupStatus.pending, SetupStatus.creating_worktree, True),
            (SetupStatus.creating_worktree, SetupStatus.init_container, True),
            (SetupStatus.init_container, SetupStatus.init_submodules, True),
            (SetupStatus.init_submodules, SetupStatus.installing_deps, True),
            (SetupStatus.installing_deps, SetupStatus.starting_session, True),
            (SetupStatus.starting_session, SetupStatus.ready, True),
            (SetupStatus.failed, SetupStatus.pending, True),
            (SetupStatus.pending, SetupStatus.ready, False),
            (SetupStatus.ready, SetupStatus.failed, False),
            (SetupStatus.installing_deps, SetupStatus.creating_worktree, False),
        ],
    )
    def test_validate_setup_transition(
        self, current: SetupStatus, target: SetupStatus, expected: bool
    ) -> None:
        assert validate_setup_transition(current, target) is expected

    def test_display_messages(self) -> None:
        assert SETUP_DISPLAY_MESSAGES[SetupStatus.pending] == "Setting up session..."
        assert SETUP_DISPLAY_MESSAGES[SetupStatus.init_container] == "Starting sandbox..."
        assert SETUP_DISPLAY_MESSAGES[SetupStatus.failed] == "Setup failed"


def _row(status: LifecycleStatus) -> MagicMock:
    row = MagicMock()
    row.lifecycle_status = status
    return row


class TestGuards:
    def test_require_ready_passes(self) -> None:
        require_ready(_row(LifecycleStatus.ready), "fork")

    @pytest.mark.parametrize(
        "status", [LifecycleStatus.creating, LifecycleStatus.failed, LifecycleStatus.deleting]
    )
    def test_require_ready_rejects(self, status: LifecycleStatus) -> None:
        with pytest.raises(LifecycleConflictError, match=f"Cannot fork session in '{status.value}'"):
            require_ready(_row(status), "fork")

    @pytest.mark.parametrize(
        "status", [LifecycleStatus.creating, LifecycleStatus.ready, LifecycleStatus.failed]
    )
    def test_require_deletable_passes(self, status: LifecycleStatus) -> None:
        require_deletable(_row(status))

    def test_require_deletable_rejects_deleting(self) -> None:
        with pytest.raises(LifecycleConflictError, match="already being deleted"):
            require_deletable(_row(LifecycleStatus.deleting))


class TestInvalidTransitionError:
    def test_message_and_status(self) -> None:
        error = InvalidTransitionError(LifecycleStatus.deleting, LifecycleStatus.ready, "S-1")

        assert str(error) == "Invalid transition from deleting to ready for session S-1"
        assert error.status_code == 409
        assert error.current == LifecycleStatus.deleting


@pytest.fixture
def session_factory() -> MagicMock:
    db = AsyncMock()
    db.__aenter__ = AsyncMock(return_value=db)
    db.__aexit__ = AsyncMock(return_value=None)
    return MagicMock(return_value=db)


class TestLifecycleStateMachine:
    @pytest.mark.asyncio
    async def test_transition_success(self, session_factory: MagicMock) -> None:
        session_id = uuid.uuid4()
        updated = _row(LifecycleStatus.deleting)

        with patch(
            "agentos.orchestrator.state_machine.compare_and_set_lifecycle",
            AsyncMock(return_value=updated),
        ) as cas:
            result = await LifecycleStateMachine(session_factory).transition(
                session_id, LifecycleStatus.deleting
            )

        assert result is updated
        args = cas.call_args.args
        assert args[1] == session_id
        assert args[2] == {
            LifecycleStatus.creating,
            LifecycleStatus.ready,
            LifecycleStatus.failed,
        }
        assert args[3] == LifecycleStatus.deleting

    @pytest.mark.asyncio
    async def test_lost_race_raises_invalid_transition(self, session_factory: MagicMock) -> None:
        with (
            patch(
                "agentos.orchestrator.state_machine.compare_and_set_lifecycle",
                AsyncMock(return_value=None),
            ),
            patch(
                "agentos.orchestrator.state_machine.get_session",
                AsyncMock(return_value=_row(LifecycleStatus.deleting)),
            ),
        ):
            with pytest.raises(InvalidTransitionError) as exc_info:
                await LifecycleStateMachine(session_factory).transition(
                    uuid.uuid4(), LifecycleStatus.failed
                )

        assert exc_info.value.current == LifecycleStatus.deleting

    @pytest.mark.asyncio
    async def test_missing_session(self, session_factory: MagicMock) -> None:
        with (
            patch(
                "agentos.orchestrator.state_machine.compare_and_set_lifecycle",
                AsyncMock(return_value=None),
            ),
            patch("agentos.orchestrator.state_machine.get_session", AsyncMock(return_value=None)),
        ):
            with pytest.raises(SessionNotFoundError):
                await LifecycleStateMachine(session_factory).transition(
                    uuid.uuid4(), LifecycleStatus.deleting
                )

    @pytest.mark.asyncio
    async def test_try_transition_returns_none(self, session_factory: MagicMock) -> None:
        with (
            patch(
                "agentos.orchestrator.state_machine.compare_and_set_lifecycle",
                AsyncMock(return_value=None),
            ),
            patch(
                "agentos.orchestrator.state_machine.get_session",
                AsyncMock(return_value=_row(LifecycleStatus.deleting)),
            ),
        ):
            result = await LifecycleStateMachine(session_factory).try_transition(
                uuid.uuid4(), LifecycleStatus.failed
            )

        assert result is None
