"""Error taxonomy for Agentos.

Every error raised by the orchestration core derives from AgentosError and
carries a stable machine code plus the HTTP status the web layer maps it to.

- PreconditionError: rejected synchronously before any resource is touched.
- ProvisioningError: raised inside the setup pipeline; always triggers rollback.
- ResourceExhaustedError: the container cap was reached.
- LifecycleConflictError: the session is not in a state that permits the operation.
- SessionNotFoundError: no such session.

Example usage:
    >>> from agentos.errors import ContainerError, ContainerErrorCode
    >>>
    >>> err = ContainerError(ContainerErrorCode.CONTAINER_UNHEALTHY, "mount missing")
    >>> err.recoverable
    False
    >>> err.user_message
    'Sandbox health check failed. The session cannot run safely.'
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class AgentosError(Exception):
    """Base class for all Agentos errors.

    Attributes:
        message: Human-readable error description
        code: Stable machine-readable error code
        status_code: HTTP status the web layer maps this error to
        details: Optional structured context
    """

    code: str = "agentos_error"
    status_code: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API error responses."""
        result: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


# ---------------------------------------------------------------------------
# Precondition errors (400)
# ---------------------------------------------------------------------------


class PreconditionError(AgentosError):
    """Request rejected before any resource was created."""

    code = "precondition_failed"
    status_code = 400


class MountValidationError(PreconditionError):
    """Extra mount configuration failed validation."""

    code = "invalid_mounts"


class DomainValidationError(PreconditionError):
    """Domain allow-list failed validation."""

    code = "invalid_domains"


class NotARepositoryError(PreconditionError):
    """Source path is not a git repository."""

    code = "not_a_repository"


# ---------------------------------------------------------------------------
# Lookup and conflict errors
# ---------------------------------------------------------------------------


class SessionNotFoundError(AgentosError):
    """Session does not exist (or has been deleted)."""

    code = "session_not_found"
    status_code = 404

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class LifecycleConflictError(AgentosError):
    """Operation not permitted in the session's current lifecycle state."""

    code = "lifecycle_conflict"
    status_code = 409


class AttachmentBusyError(AgentosError):
    """A display slot lock could not be acquired in time."""

    code = "attachment_busy"
    status_code = 409


# ---------------------------------------------------------------------------
# Provisioning errors (raised inside the setup pipeline)
# ---------------------------------------------------------------------------


class ProvisioningError(AgentosError):
    """A setup pipeline step failed."""

    code = "provisioning_failed"
    status_code = 500


class WorktreeCreationError(ProvisioningError):
    """Git worktree could not be created."""

    code = "worktree_creation_failed"


class DependencyBootstrapError(ProvisioningError):
    """One or more dependency setup commands failed."""

    code = "dependency_bootstrap_failed"


class ProcessStartError(ProvisioningError):
    """The agent's terminal process could not be started."""

    code = "process_start_failed"


class ContainerErrorCode(str, Enum):
    """Stable container failure codes."""

    DOCKER_UNAVAILABLE = "docker_unavailable"
    CONTAINER_CREATE_FAILED = "container_create_failed"
    CONTAINER_UNHEALTHY = "container_unhealthy"
    FIREWALL_INIT_FAILED = "firewall_init_failed"
    CONTAINER_NOT_FOUND = "container_not_found"
    HEALTH_CHECK_FAILED = "health_check_failed"
    CONTAINER_STOPPED = "container_stopped"
    MOUNT_MISMATCH = "mount_mismatch"


_CONTAINER_ERROR_INFO: dict[ContainerErrorCode, tuple[bool, str]] = {
    ContainerErrorCode.DOCKER_UNAVAILABLE: (
        True,
        "Docker is not available. Start Docker and try again.",
    ),
    ContainerErrorCode.CONTAINER_CREATE_FAILED: (
        True,
        "Failed to create the sandbox container.",
    ),
    ContainerErrorCode.CONTAINER_UNHEALTHY: (
        False,
        "Sandbox health check failed. The session cannot run safely.",
    ),
    ContainerErrorCode.FIREWALL_INIT_FAILED: (
        False,
        "Failed to initialize the sandbox network firewall.",
    ),
    ContainerErrorCode.CONTAINER_NOT_FOUND: (
        False,
        "Sandbox container no longer exists.",
    ),
    ContainerErrorCode.HEALTH_CHECK_FAILED: (
        True,
        "Could not verify sandbox health.",
    ),
    ContainerErrorCode.CONTAINER_STOPPED: (
        False,
        "Sandbox container is not running.",
    ),
    ContainerErrorCode.MOUNT_MISMATCH: (
        False,
        "Sandbox workspace mount does not match the session worktree.",
    ),
}


class ContainerError(ProvisioningError):
    """Sandbox container operation failed.

    Attributes:
        container_code: Specific ContainerErrorCode
        recoverable: Whether retrying the operation can succeed
        user_message: Stable message suitable for display
    """

    code = "container_error"

    def __init__(
        self,
        container_code: ContainerErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.container_code = container_code
        self.recoverable, self.user_message = _CONTAINER_ERROR_INFO[container_code]
        super().__init__(message, details)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["container_code"] = self.container_code.value
        result["recoverable"] = self.recoverable
        return result


class ResourceExhaustedError(ProvisioningError):
    """Global sandbox concurrency cap reached."""

    code = "resource_exhausted"
    status_code = 503

    def __init__(self, active: int, limit: int) -> None:
        self.active = active
        self.limit = limit
        super().__init__(
            f"Container limit reached ({active}/{limit} running). "
            "Delete an existing sandboxed session and try again.",
            details={"active": active, "limit": limit},
        )
