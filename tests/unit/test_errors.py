"""Unit tests for the error taxonomy."""

from __future__ import annotations

import pytest

from agentos.errors import (
    AgentosError,
    ContainerError,
    ContainerErrorCode,
    DomainValidationError,
    LifecycleConflictError,
    MountValidationError,
    NotARepositoryError,
    PreconditionError,
    ProvisioningError,
    ResourceExhaustedError,
    SessionNotFoundError,
)


@pytest.mark.parametrize(
    "error,status_code",
    [
        (MountValidationError("bad"), 400),
        (DomainValidationError("bad"), 400),
        (NotARepositoryError("bad"), 400),
        (SessionNotFoundError("s1"), 404),
        (LifecycleConflictError("busy"), 409),
        (ProvisioningError("boom"), 500),
        (ResourceExhaustedError(20, 20), 503),
    ],
)
def test_status_codes(error: AgentosError, status_code: int) -> None:
    assert error.status_code == status_code


def test_precondition_hierarchy() -> None:
    assert issubclass(MountValidationError, PreconditionError)
    assert issubclass(ResourceExhaustedError, ProvisioningError)
    assert issubclass(ContainerError, ProvisioningError)


def test_to_dict() -> None:
    error = MountValidationError("Mount 1: Host path is required", details={"index": 1})

    assert error.to_dict() == {
        "error": "invalid_mounts",
        "message": "Mount 1: Host path is required",
        "details": {"index": 1},
    }


def test_to_dict_without_details() -> None:
    assert SessionNotFoundError("s1").to_dict() == {
        "error": "session_not_found",
        "message": "Session s1 not found",
    }


@pytest.mark.parametrize(
    "code,recoverable",
    [
        (ContainerErrorCode.DOCKER_UNAVAILABLE, True),
        (ContainerErrorCode.CONTAINER_CREATE_FAILED, True),
        (ContainerErrorCode.HEALTH_CHECK_FAILED, True),
        (ContainerErrorCode.CONTAINER_UNHEALTHY, False),
        (ContainerErrorCode.FIREWALL_INIT_FAILED, False),
        (ContainerErrorCode.MOUNT_MISMATCH, False),
    ],
)
def test_container_error_recoverable(code: ContainerErrorCode, recoverable: bool) -> None:
    error = ContainerError(code, "details")
    assert error.recoverable is recoverable
    assert error.user_message


def test_every_container_code_has_a_message() -> None:
    for code in ContainerErrorCode:
        assert ContainerError(code, "x").user_message


def test_container_error_to_dict() -> None:
    payload = ContainerError(ContainerErrorCode.CONTAINER_UNHEALTHY, "mount missing").to_dict()

    assert payload["container_code"] == "container_unhealthy"
    assert payload["recoverable"] is False


def test_resource_exhausted_message() -> None:
    error = ResourceExhaustedError(3, 3)
    assert "3/3" in error.message
    assert error.details == {"active": 3, "limit": 3}
