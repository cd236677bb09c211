"""Native sandbox mode: permission policy files instead of containers.

When the agent runs under the host's own process confinement, isolation is
expressed as a settings file inside the worktree. The policy allows writes
and edits only inside the worktree, denies absolute and home paths, denies
credential files, blocks network-capable shell tools, and disables
arbitrary URL fetching. There is no container cap in this mode, but a
worktree is still required.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from agentos.errors import ContainerError, ContainerErrorCode
from agentos.logging import get_logger
from agentos.pipeline.audit import SecurityAuditLog, SecurityEventType
from agentos.pipeline.container import ContainerHealthResult, SandboxRequest

POLICY_RELATIVE_PATH = Path(".claude") / "settings.json"
NATIVE_ID_PREFIX = "native-"

SECRET_PATTERNS: tuple[str, ...] = (
    "**/.env",
    "**/.env.*",
    "**/*.pem",
    "**/*.key",
    "**/id_rsa*",
    "**/id_ed25519*",
    "~/.ssh/**",
    "~/.aws/**",
    "~/.gnupg/**",
    "~/.config/gh/**",
    "~/.netrc",
    "~/.npmrc",
    "~/.docker/**",
)

NETWORK_TOOLS: tuple[str, ...] = (
    "curl",
    "wget",
    "nc",
    "ncat",
    "ssh",
    "scp",
    "rsync",
    "telnet",
    "ftp",
)


class SandboxPolicy(BaseModel):
    """Permission rules written into the worktree."""

    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)

    def to_settings(self) -> dict[str, Any]:
        return {"permissions": {"allow": self.allow, "deny": self.deny}}


def build_policy(worktree_path: Path) -> SandboxPolicy:
    """Build the confinement policy for one worktree.

    Example:
        >>> policy = build_policy(Path("/wt/app-login"))
        >>> "Write(/wt/app-login/**)" in policy.allow
        True
        >>> "WebFetch" in policy.deny
        True
    """
    root = str(worktree_path)
    allow = [
        f"Write({root}/**)",
        f"Edit({root}/**)",
        f"Read({root}/**)",
    ]

    deny = ["Write(/**)", "Edit(/**)", "Write(~/**)", "Edit(~/**)"]
    for pattern in SECRET_PATTERNS:
        deny.append(f"Read({pattern})")
        deny.append(f"Write({pattern})")
        deny.append(f"Edit({pattern})")
    for tool in NETWORK_TOOLS:
        deny.append(f"Bash({tool}:*)")
    deny.append("WebFetch")

    return SandboxPolicy(allow=allow, deny=deny)


class NativeSandboxManager:
    """SandboxBackend that confines the agent with a policy file.

    The "container id" of a native sandbox is ``native-<session_id>``.
    """

    max_containers: int | None = None

    def __init__(self, audit: SecurityAuditLog) -> None:
        self.audit = audit
        self.logger = get_logger(__name__)

    async def is_backend_available(self) -> bool:
        return True

    async def count_active_containers(self) -> int:
        return 0

    def _write(self, worktree_path: Path) -> Path:
        policy_path = worktree_path / POLICY_RELATIVE_PATH
        policy_path.parent.mkdir(parents=True, exist_ok=True)

        settings: dict[str, Any] = {}
        if policy_path.exists():
            try:
                settings = json.loads(policy_path.read_text(encoding="utf-8"))
            except ValueError:
                settings = {}
        settings.update(build_policy(worktree_path).to_settings())

        policy_path.write_text(json.dumps(settings, indent=2) + "\n", encoding="utf-8")
        return policy_path

    async def create_container(self, request: SandboxRequest) -> str:
        """Write the policy file for the request's worktree.

        Raises:
            ContainerError: If the policy file cannot be written
        """
        worktree = request.worktree_path.expanduser().resolve()
        try:
            policy_path = await asyncio.to_thread(self._write, worktree)
        except OSError as e:
            self.audit.record(
                SecurityEventType.POLICY_WRITTEN,
                session_id=request.session_id,
                success=False,
                error=str(e),
            )
            raise ContainerError(
                ContainerErrorCode.CONTAINER_CREATE_FAILED,
                f"Failed to write sandbox policy: {e}",
            ) from e

        sandbox_id = f"{NATIVE_ID_PREFIX}{request.session_id}"
        self.audit.record(
            SecurityEventType.POLICY_WRITTEN,
            session_id=request.session_id,
            container_id=sandbox_id,
            success=True,
            policy_path=str(policy_path),
        )
        return sandbox_id

    async def verify_container_health(
        self, container_id: str, worktree_path: Path, session_id: str | None = None
    ) -> ContainerHealthResult:
        """Check that the policy file is present and matches the worktree."""
        worktree = worktree_path.expanduser().resolve()
        policy_path = worktree / POLICY_RELATIVE_PATH
        expected = build_policy(worktree).to_settings()["permissions"]

        try:
            settings = json.loads(policy_path.read_text(encoding="utf-8"))
            permissions = settings.get("permissions", {})
            healthy = set(expected["deny"]) <= set(permissions.get("deny", [])) and set(
                expected["allow"]
            ) <= set(permissions.get("allow", []))
            error = None if healthy else "Sandbox policy does not match the worktree"
        except (OSError, ValueError) as e:
            healthy = False
            error = f"Sandbox policy unreadable: {e}"

        result = ContainerHealthResult(
            healthy=healthy,
            error=error,
            error_code=None if healthy else ContainerErrorCode.CONTAINER_UNHEALTHY,
        )
        self.audit.record(
            SecurityEventType.CONTAINER_HEALTH_CHECK,
            session_id=session_id or "unknown",
            container_id=container_id,
            success=healthy,
            error=error,
        )
        return result

    async def destroy_container(self, container_id: str, session_id: str) -> bool:
        """Nothing runs separately in native mode; record the teardown."""
        self.audit.record(
            SecurityEventType.CONTAINER_DESTROYED,
            session_id=session_id,
            container_id=container_id,
            success=True,
        )
        return True

    def wrap_command(
        self, container_id: str | None, argv: list[str], cwd: Path
    ) -> tuple[list[str], Path]:
        return argv, cwd
