"""Terminal process management for agent sessions.

The agent runs inside a detached tmux session on a dedicated socket so it
survives browser disconnects and can be re-attached. ``ProcessBackend`` is
the narrow interface the orchestrator uses; ``TmuxProcessBackend`` is the
tmux implementation. Every tmux invocation carries a timeout.

Example usage:
    >>> from agentos.config import TerminalConfig
    >>> from agentos.pipeline.terminal import TmuxProcessBackend
    >>>
    >>> terminal = TmuxProcessBackend(TerminalConfig())
    >>> await terminal.start_session("claude-4f1c", ["claude"], Path("/wt/app-login"))
    >>> await terminal.has_session("claude-4f1c")
    True
"""

from __future__ import annotations

import asyncio
import shlex
from pathlib import Path
from typing import Protocol, runtime_checkable

from agentos.config import TerminalConfig
from agentos.errors import ProcessStartError
from agentos.logging import get_logger

# Agent CLI invocations keyed by agent type
AGENT_COMMANDS: dict[str, list[str]] = {
    "claude": ["claude"],
    "codex": ["codex"],
    "opencode": ["opencode"],
}

AUTO_APPROVE_FLAGS: dict[str, list[str]] = {
    "claude": ["--dangerously-skip-permissions"],
    "codex": ["--full-auto"],
}


def build_agent_command(
    agent_type: str, auto_approve: bool = False, initial_prompt: str | None = None
) -> list[str]:
    """Build the argv that launches an agent CLI.

    Unknown agent types are launched by name.
    """
    argv = list(AGENT_COMMANDS.get(agent_type, [agent_type]))
    if auto_approve:
        argv.extend(AUTO_APPROVE_FLAGS.get(agent_type, []))
    if initial_prompt:
        argv.append(initial_prompt)
    return argv


@runtime_checkable
class ProcessBackend(Protocol):
    """Starts, probes, and stops the agent's interactive process."""

    async def start_session(self, name: str, argv: list[str], cwd: Path) -> None: ...

    async def has_session(self, name: str) -> bool: ...

    async def kill_session(self, name: str) -> bool: ...

    async def select_window(self, name: str, slot: str) -> None: ...


class TmuxProcessBackend:
    """tmux-backed ProcessBackend on a dedicated socket.

    Attributes:
        config: Terminal configuration
        logger: Structured logger instance
    """

    def __init__(self, config: TerminalConfig) -> None:
        self.config = config
        self.logger = get_logger(__name__)

    async def _run(self, *args: str) -> tuple[bool, str, str]:
        """Run a tmux command on the configured socket.

        Returns:
            Tuple of (success, stdout, stderr)
        """
        cmd = ["tmux", "-L", self.config.socket_name, *args]
        timeout = self.config.command_timeout_seconds

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            self.logger.error("tmux_command_timeout", args=list(args), timeout=timeout)
            return False, "", f"tmux command timed out after {timeout} seconds"
        except FileNotFoundError:
            self.logger.error("tmux_not_found")
            return False, "", "tmux not found"

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return proc.returncode == 0, stdout, stderr

    async def start_session(self, name: str, argv: list[str], cwd: Path) -> None:
        """Start a detached tmux session running ``argv`` in ``cwd``.

        Raises:
            ProcessStartError: If tmux fails or times out
        """
        command = shlex.join(argv)
        ok, _stdout, stderr = await self._run(
            "new-session", "-d", "-s", name, "-c", str(cwd), command
        )
        if not ok:
            self.logger.error("process_start_failed", tmux_session=name, stderr=stderr)
            raise ProcessStartError(
                f"Failed to start session process: {stderr.strip() or 'unknown error'}",
                details={"tmux_session": name},
            )
        self.logger.info("process_started", tmux_session=name, cwd=str(cwd))

    async def has_session(self, name: str) -> bool:
        ok, _stdout, _stderr = await self._run("has-session", "-t", name)
        return ok

    async def kill_session(self, name: str) -> bool:
        """Kill a tmux session. Killing an absent session is not an error."""
        ok, _stdout, stderr = await self._run("kill-session", "-t", name)
        if not ok:
            self.logger.debug("process_kill_skipped", tmux_session=name, stderr=stderr)
        return ok

    async def select_window(self, name: str, slot: str) -> None:
        """Point a display slot's client at ``name``.

        The slot names a tmux client tty; an empty slot switches the most
        recently active client.
        """
        args = ["switch-client", "-t", name]
        if slot:
            args = ["switch-client", "-c", slot, "-t", name]
        ok, _stdout, stderr = await self._run(*args)
        if not ok:
            raise ProcessStartError(
                f"Failed to attach to session process: {stderr.strip() or 'unknown error'}",
                details={"tmux_session": name, "slot": slot},
            )
