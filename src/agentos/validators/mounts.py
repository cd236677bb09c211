"""Extra mount validation for sandboxed sessions.

Host paths and container paths are normalized and checked against fixed
denylists of system directories before a mount is ever handed to the
container runtime.

Example usage:
    >>> from agentos.validators.mounts import validate_mounts
    >>>
    >>> mounts = validate_mounts([
    ...     {"host_path": "~/datasets", "container_path": "/data", "mode": "ro"},
    ... ])
    >>> mounts[0].mode
    'ro'
    >>> validate_mounts([{"host_path": "/etc", "container_path": "/x", "mode": "ro"}])
    MountValidationError  # Mount 1: Host path '/etc' is not allowed ...
"""

from __future__ import annotations

import json
import os
import posixpath
from collections.abc import Mapping, Sequence
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from agentos.errors import MountValidationError

BLOCKED_HOST_PATHS: tuple[str, ...] = (
    "/",
    "/etc",
    "/root",
    "/var",
    "/usr",
    "/bin",
    "/sbin",
    "/lib",
    "/lib64",
    "/boot",
    "/proc",
    "/sys",
    "/dev",
)

# /workspace holds the worktree; the .claude dirs hold agent config
BLOCKED_CONTAINER_PATHS: tuple[str, ...] = (
    "/workspace",
    "/home/node/.claude",
    "/home/node/.claude-host",
    "/usr",
    "/bin",
    "/sbin",
    "/lib",
    "/lib64",
    "/etc",
    "/proc",
    "/sys",
    "/dev",
)


class MountConfig(BaseModel):
    """A single host to container bind mount.

    Accepts both snake_case and camelCase keys so configurations stored by
    browser clients round-trip unchanged.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    host_path: str = Field(alias="hostPath", description="Absolute or ~ host path")
    container_path: str = Field(alias="containerPath", description="Absolute container path")
    mode: Literal["ro", "rw"] = Field(default="ro", description="Mount mode")

    def resolved_host_path(self) -> str:
        """Host path with ~ expanded and normalized."""
        return _normalize_host(self.host_path.strip())

    def to_docker_volume(self) -> tuple[str, dict[str, str]]:
        """Return the (host, {"bind", "mode"}) pair docker-py expects."""
        return self.resolved_host_path(), {
            "bind": posixpath.normpath(self.container_path.strip()),
            "mode": self.mode,
        }


def _normalize_host(path: str) -> str:
    return posixpath.normpath(os.path.expanduser(path))


def _blocked_by(normalized: str, blocked_paths: Sequence[str]) -> str | None:
    for blocked in blocked_paths:
        if normalized == blocked:
            return blocked
        # "/" is only blocked exactly; everything else blocks its subtree
        if blocked != "/" and normalized.startswith(blocked + "/"):
            return blocked
    return None


def validate_host_path(host_path: str) -> str | None:
    """Validate a host path.

    Args:
        host_path: Raw host path from the request

    Returns:
        None if valid, otherwise an error message
    """
    if not host_path or not host_path.strip():
        return "Host path is required"

    trimmed = host_path.strip()
    if not (trimmed.startswith("/") or trimmed.startswith("~")):
        return "Host path must be absolute (start with / or ~)"

    blocked = _blocked_by(_normalize_host(trimmed), BLOCKED_HOST_PATHS)
    if blocked:
        return f"Host path '{blocked}' is not allowed for security reasons"
    return None


def validate_container_path(container_path: str) -> str | None:
    """Validate a container path.

    Args:
        container_path: Raw container path from the request

    Returns:
        None if valid, otherwise an error message
    """
    if not container_path or not container_path.strip():
        return "Container path is required"

    trimmed = container_path.strip()
    if not trimmed.startswith("/"):
        return "Container path must be absolute (start with /)"

    blocked = _blocked_by(posixpath.normpath(trimmed), BLOCKED_CONTAINER_PATHS)
    if blocked:
        return f"Container path '{blocked}' is not allowed (reserved or system directory)"
    return None


def _coerce(index: int, raw: MountConfig | Mapping[str, Any]) -> MountConfig:
    if isinstance(raw, MountConfig):
        return raw
    if not isinstance(raw, Mapping):
        raise MountValidationError(f"Mount {index}: Mount configuration must be an object")

    host = raw.get("host_path", raw.get("hostPath"))
    container = raw.get("container_path", raw.get("containerPath"))
    mode = raw.get("mode", "ro")

    if not isinstance(host, str):
        raise MountValidationError(f"Mount {index}: Host path is required")
    if not isinstance(container, str):
        raise MountValidationError(f"Mount {index}: Container path is required")
    if mode not in ("ro", "rw"):
        raise MountValidationError(f"Mount {index}: Mount mode must be 'ro' or 'rw'")

    return MountConfig(host_path=host, container_path=container, mode=mode)


def validate_mounts(
    mounts: Sequence[MountConfig | Mapping[str, Any]] | None,
) -> list[MountConfig]:
    """Validate a list of extra mounts.

    Checks every entry in order and fails on the first problem, then rejects
    duplicate container paths.

    Args:
        mounts: Mount entries as MountConfig instances or plain mappings

    Returns:
        The validated mounts as MountConfig instances

    Raises:
        MountValidationError: With a "Mount N: ..." message on the first failure
    """
    if mounts is None:
        return []
    if isinstance(mounts, (str, bytes)) or not isinstance(mounts, Sequence):
        raise MountValidationError("Mounts must be a list")

    validated: list[MountConfig] = []
    for index, raw in enumerate(mounts, start=1):
        mount = _coerce(index, raw)
        error = validate_host_path(mount.host_path) or validate_container_path(
            mount.container_path
        )
        if error:
            raise MountValidationError(
                f"Mount {index}: {error}",
                details={"index": index, "mount": mount.model_dump()},
            )
        validated.append(mount)

    seen: set[str] = set()
    for index, mount in enumerate(validated, start=1):
        normalized = posixpath.normpath(mount.container_path.strip())
        if normalized in seen:
            raise MountValidationError(
                f"Mount {index}: Duplicate container path '{mount.container_path}'"
            )
        seen.add(normalized)

    return validated


def parse_mounts(raw: Any) -> list[MountConfig]:
    """Parse stored mounts, dropping malformed entries.

    Args:
        raw: None, a JSON string, or a list of mappings as stored

    Returns:
        List of well-formed MountConfig entries (empty on any decode error)
    """
    if not raw:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    if not isinstance(raw, list):
        return []

    parsed: list[MountConfig] = []
    for item in raw:
        try:
            parsed.append(_coerce(0, item))
        except MountValidationError:
            continue
    return parsed


def serialize_mounts(mounts: Sequence[MountConfig] | None) -> list[dict[str, str]] | None:
    """Serialize mounts for storage; None when empty."""
    if not mounts:
        return None
    return [m.model_dump() for m in mounts]
