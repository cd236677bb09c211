"""Unit tests for the tmux process backend."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentos.config import TerminalConfig
from agentos.errors import ProcessStartError
from agentos.pipeline.terminal import ProcessBackend, TmuxProcessBackend, build_agent_command


def _proc(returncode: int = 0, stdout: bytes = b"", stderr: bytes = b"") -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    proc.wait = AsyncMock(return_value=returncode)
    return proc


class TestBuildAgentCommand:
    def test_plain(self) -> None:
        assert build_agent_command("claude") == ["claude"]

    def test_auto_approve_flag(self) -> None:
        assert build_agent_command("claude", auto_approve=True) == [
            "claude",
            "--dangerously-skip-permissions",
        ]
        assert build_agent_command("codex", auto_approve=True) == ["codex", "--full-auto"]

    def test_initial_prompt_is_last(self) -> None:
        assert build_agent_command("claude", initial_prompt="fix the login form")[-1] == (
            "fix the login form"
        )

    def test_unknown_agent_launched_by_name(self) -> None:
        assert build_agent_command("aider", auto_approve=True) == ["aider"]


class TestTmuxProcessBackend:
    @pytest.fixture
    def backend(self) -> TmuxProcessBackend:
        return TmuxProcessBackend(TerminalConfig(socket_name="test-sock"))

    def test_satisfies_protocol(self, backend: TmuxProcessBackend) -> None:
        assert isinstance(backend, ProcessBackend)

    @pytest.mark.asyncio
    async def test_start_session_command_line(self, backend: TmuxProcessBackend) -> None:
        with patch(
            "asyncio.create_subprocess_exec", AsyncMock(return_value=_proc())
        ) as exec_mock:
            await backend.start_session(
                "claude-1", ["claude", "--dangerously-skip-permissions"], Path("/wt/a")
            )

        args = exec_mock.call_args.args
        assert args[:3] == ("tmux", "-L", "test-sock")
        assert args[3:9] == ("new-session", "-d", "-s", "claude-1", "-c", "/wt/a")
        assert args[9] == "claude --dangerously-skip-permissions"

    @pytest.mark.asyncio
    async def test_start_failure_raises(self, backend: TmuxProcessBackend) -> None:
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(return_value=_proc(1, stderr=b"duplicate session: claude-1")),
        ):
            with pytest.raises(ProcessStartError, match="duplicate session"):
                await backend.start_session("claude-1", ["claude"], Path("/wt/a"))

    @pytest.mark.asyncio
    async def test_missing_tmux(self, backend: TmuxProcessBackend) -> None:
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError)):
            assert await backend.has_session("claude-1") is False

    @pytest.mark.asyncio
    async def test_timeout_kills_tmux(self) -> None:
        backend = TmuxProcessBackend(TerminalConfig(command_timeout_seconds=1))
        proc = _proc()

        async def hang() -> tuple[bytes, bytes]:
            await asyncio.sleep(10)
            return b"", b""

        proc.communicate = hang
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            assert await backend.kill_session("claude-1") is False

        proc.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_select_window_targets_slot(self, backend: TmuxProcessBackend) -> None:
        with patch(
            "asyncio.create_subprocess_exec", AsyncMock(return_value=_proc())
        ) as exec_mock:
            await backend.select_window("claude-1", "/dev/pts/3")

        assert exec_mock.call_args.args[3:] == (
            "switch-client",
            "-c",
            "/dev/pts/3",
            "-t",
            "claude-1",
        )

    @pytest.mark.asyncio
    async def test_select_window_failure(self, backend: TmuxProcessBackend) -> None:
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(return_value=_proc(1, stderr=b"no current client")),
        ):
            with pytest.raises(ProcessStartError, match="no current client"):
                await backend.select_window("claude-1", "")
