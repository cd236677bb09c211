"""Dependency bootstrap for freshly created worktrees.

A new worktree has no untracked files and no installed dependencies. The
bootstrapper copies ``.env*`` files from the source repository, then runs
either the repository's own setup commands (from ``.agent-os/worktrees.json``
or ``.agent-os.json``) or the install command of the package manager
detected from lockfiles. Every command is bounded by a timeout; failures are
collected and reported together.

Example usage:
    >>> from agentos.config import SetupConfig
    >>> from agentos.pipeline.env_setup import DependencyBootstrapper
    >>>
    >>> bootstrapper = DependencyBootstrapper(SetupConfig())
    >>> result = await bootstrapper.bootstrap(Path("/src/app"), Path("/wt/app-login"))
    >>> result.package_manager
    'pnpm'
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
from pathlib import Path

from pydantic import BaseModel, Field

from agentos.config import SetupConfig
from agentos.errors import DependencyBootstrapError
from agentos.logging import get_logger

CONFIG_FILES: tuple[Path, ...] = (
    Path(".agent-os") / "worktrees.json",
    Path(".agent-os.json"),
)

LOCKFILES: tuple[tuple[str, str, str], ...] = (
    ("bun.lockb", "bun", "bun install"),
    ("pnpm-lock.yaml", "pnpm", "pnpm install"),
    ("yarn.lock", "yarn", "yarn install"),
    ("package-lock.json", "npm", "npm install --legacy-peer-deps"),
)


class SetupStep(BaseModel):
    """One executed bootstrap step."""

    name: str = Field(description="Step label")
    command: str = Field(description="Command as executed")
    success: bool = Field(description="Exit status was zero")
    output: str = Field(default="", description="Tail of stdout")
    error: str | None = Field(default=None, description="Failure reason")


class BootstrapResult(BaseModel):
    """Outcome of bootstrapping one worktree."""

    steps: list[SetupStep] = Field(default_factory=list)
    env_files_copied: list[str] = Field(default_factory=list)
    package_manager: str | None = Field(default=None)

    @property
    def success(self) -> bool:
        return all(step.success for step in self.steps)

    @property
    def errors(self) -> list[str]:
        return [f"{s.name}: {s.error}" for s in self.steps if not s.success]


def detect_package_manager(project_path: Path) -> tuple[str, str] | None:
    """Return (name, install command) from lockfiles, or None."""
    for filename, name, command in LOCKFILES:
        if (project_path / filename).exists():
            return name, command
    if (project_path / "package.json").exists():
        return "npm", "npm install --legacy-peer-deps"
    return None


def find_env_files(project_path: Path) -> list[str]:
    """``.env*`` files in the project root, excluding ``*.example``."""
    try:
        return sorted(
            p.name
            for p in project_path.iterdir()
            if p.name.startswith(".env") and not p.name.endswith(".example") and p.is_file()
        )
    except OSError:
        return []


def load_setup_commands(project_path: Path) -> list[str] | None:
    """Read the ``setup`` command list from the repository config, if any."""
    for relative in CONFIG_FILES:
        config_path = project_path / relative
        if not config_path.is_file():
            continue
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            continue
        setup = data.get("setup") if isinstance(data, dict) else None
        if isinstance(setup, str):
            return [setup]
        if isinstance(setup, list):
            return [c for c in setup if isinstance(c, str) and c.strip()]
    return None


class DependencyBootstrapper:
    """Runs dependency setup inside a new worktree.

    Attributes:
        config: Setup configuration
        logger: Structured logger instance
    """

    def __init__(self, config: SetupConfig) -> None:
        self.config = config
        self.logger = get_logger(__name__)

    def copy_env_files(self, source_path: Path, worktree_path: Path) -> list[str]:
        """Copy ``.env*`` files; individual copy failures are logged and skipped."""
        copied: list[str] = []
        for name in find_env_files(source_path):
            try:
                shutil.copy2(source_path / name, worktree_path / name)
                copied.append(name)
            except OSError as e:
                self.logger.warning("env_file_copy_failed", file=name, error=str(e))
        return copied

    async def run_command(
        self, command: str, cwd: Path, env: dict[str, str]
    ) -> tuple[bool, str, str | None]:
        """Run a shell command with the install timeout.

        Returns:
            (success, output tail, error message)
        """
        timeout = self.config.install_timeout_seconds
        self.logger.info("setup_command_started", command=command, cwd=str(cwd))

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=str(cwd),
                env={**os.environ, **env},
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return False, "", str(e)

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            self.logger.error("setup_command_timeout", command=command, timeout=timeout)
            return False, "", f"Command timed out after {timeout} seconds"

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")

        if proc.returncode != 0:
            self.logger.error(
                "setup_command_failed",
                command=command,
                returncode=proc.returncode,
                stderr=stderr[-500:],
            )
            detail = stderr.strip()[-500:] or f"exit code {proc.returncode}"
            return False, stdout[-2000:], detail

        return True, stdout[-2000:], None

    async def bootstrap(self, source_path: Path, worktree_path: Path) -> BootstrapResult:
        """Copy env files and install dependencies in ``worktree_path``.

        Returns:
            BootstrapResult with every executed step
        """
        result = BootstrapResult()

        if self.config.copy_env_files:
            result.env_files_copied = await asyncio.to_thread(
                self.copy_env_files, source_path, worktree_path
            )
            if result.env_files_copied:
                result.steps.append(
                    SetupStep(
                        name="Copy env files",
                        command=f"cp {' '.join(result.env_files_copied)}",
                        success=True,
                        output=f"Copied: {', '.join(result.env_files_copied)}",
                    )
                )

        env = {
            "ROOT_WORKTREE_PATH": str(source_path),
            "WORKTREE_PATH": str(worktree_path),
        }

        commands = load_setup_commands(source_path)
        if commands:
            for raw in commands:
                expanded = raw
                for key, value in env.items():
                    expanded = expanded.replace(f"${key}", value)
                ok, output, error = await self.run_command(expanded, worktree_path, env)
                label = raw if len(raw) <= 50 else raw[:50] + "..."
                result.steps.append(
                    SetupStep(
                        name=f"Config: {label}",
                        command=expanded,
                        success=ok,
                        output=output,
                        error=error,
                    )
                )
        else:
            detected = detect_package_manager(source_path)
            if detected is not None:
                name, command = detected
                result.package_manager = name
                ok, output, error = await self.run_command(command, worktree_path, env)
                result.steps.append(
                    SetupStep(
                        name=f"Install dependencies ({name})",
                        command=command,
                        success=ok,
                        output=output,
                        error=error,
                    )
                )

        return result

    async def bootstrap_or_raise(self, source_path: Path, worktree_path: Path) -> BootstrapResult:
        """Like bootstrap() but raises when any step failed.

        Raises:
            DependencyBootstrapError: With every failing step joined by "; "
        """
        result = await self.bootstrap(source_path, worktree_path)
        if not result.success:
            raise DependencyBootstrapError(
                "; ".join(result.errors),
                details={"failed_steps": [s.name for s in result.steps if not s.success]},
            )
        return result
