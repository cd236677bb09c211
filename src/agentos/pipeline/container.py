"""Sandbox container management for Agentos.

This module provides the ``SandboxBackend`` protocol the setup pipeline
talks to and ``DockerSandboxManager``, its docker-py implementation. All
docker-py calls run in worker threads and carry a timeout.

A sandbox container bind-mounts only the session worktree (plus the
repository's shared .git directory and validated extra mounts), restricts
egress with an iptables firewall initialised from the merged domain
allow-list, and must pass a post-start health probe before the session may
use it. A global cap bounds the number of running sandbox containers.

Example usage:
    >>> from agentos.config import SandboxConfig
    >>> from agentos.pipeline.audit import SecurityAuditLog
    >>> from agentos.pipeline.container import DockerSandboxManager, SandboxRequest
    >>>
    >>> manager = DockerSandboxManager(SandboxConfig(), SecurityAuditLog())
    >>> if await manager.is_backend_available():
    ...     container_id = await manager.create_container(
    ...         SandboxRequest(session_id="4f1c", worktree_path=Path("/wt/app-login"))
    ...     )
    ...     health = await manager.verify_container_health(container_id, Path("/wt/app-login"))
    ...     if not health.healthy:
    ...         await manager.destroy_container(container_id, session_id="4f1c")
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.types import Ulimit
from pydantic import BaseModel, Field

from agentos.config import SandboxConfig
from agentos.errors import ContainerError, ContainerErrorCode, ResourceExhaustedError
from agentos.logging import get_logger
from agentos.pipeline.audit import SecurityAuditLog, SecurityEventType
from agentos.validators.domains import merge_with_defaults
from agentos.validators.mounts import MountConfig

WORKSPACE_MOUNT = "/workspace"
FIREWALL_SCRIPT = "/usr/local/bin/init-firewall.sh"
MANAGED_LABEL = "agentos.managed"
SESSION_LABEL = "agentos.session_id"


class SandboxRequest(BaseModel):
    """Everything needed to provision one sandbox.

    Attributes:
        session_id: Owning session
        worktree_path: Worktree to mount at /workspace
        git_common_dir: Shared .git directory of the source repository
        extra_mounts: Validated extra mounts
        allowed_domains: Validated extra egress domains
    """

    session_id: str = Field(description="Owning session id")
    worktree_path: Path = Field(description="Worktree mounted at /workspace")
    git_common_dir: Path | None = Field(default=None, description="Shared .git dir")
    extra_mounts: list[MountConfig] = Field(default_factory=list)
    allowed_domains: list[str] = Field(default_factory=list)


class ContainerHealthResult(BaseModel):
    """Outcome of a post-start health probe.

    Attributes:
        healthy: All probe steps passed
        error: Reason for the first failed step
        error_code: ContainerErrorCode of the first failed step
    """

    healthy: bool = Field(description="Probe passed")
    error: str | None = Field(default=None, description="First failure reason")
    error_code: ContainerErrorCode | None = Field(default=None)


@runtime_checkable
class SandboxBackend(Protocol):
    """Narrow interface the orchestration core uses for sandboxes."""

    max_containers: int | None

    async def is_backend_available(self) -> bool: ...

    async def count_active_containers(self) -> int: ...

    async def create_container(self, request: SandboxRequest) -> str: ...

    async def verify_container_health(
        self, container_id: str, worktree_path: Path, session_id: str | None = None
    ) -> ContainerHealthResult: ...

    async def destroy_container(self, container_id: str, session_id: str) -> bool: ...

    def wrap_command(
        self, container_id: str | None, argv: list[str], cwd: Path
    ) -> tuple[list[str], Path]: ...


class DockerSandboxManager:
    """Docker-backed sandbox containers with a global concurrency cap.

    Attributes:
        config: Sandbox configuration
        audit: Security event log
        logger: Structured logger instance
    """

    def __init__(
        self,
        config: SandboxConfig,
        audit: SecurityAuditLog,
        client: docker.DockerClient | None = None,
        destroy_backoff_seconds: float = 1.0,
    ) -> None:
        """Initialize DockerSandboxManager.

        Args:
            config: Sandbox configuration settings
            audit: Security event log
            client: Pre-built Docker client (connection deferred otherwise)
            destroy_backoff_seconds: Base delay between destroy attempts
        """
        self.config = config
        self.audit = audit
        self.max_containers: int | None = config.max_containers
        self.destroy_backoff_seconds = destroy_backoff_seconds
        self.logger = get_logger(__name__)
        self._client = client
        self._cap_lock = asyncio.Lock()
        # Sessions past the cap check whose container is not yet listed
        self._reserved: set[str] = set()

    def _get_client(self) -> docker.DockerClient:
        """Get or create the Docker client connection.

        Raises:
            DockerException: If unable to connect to Docker daemon
        """
        if self._client is None:
            docker_host = os.environ.get("DOCKER_HOST")
            if docker_host:
                self._client = docker.DockerClient(base_url=docker_host)
            elif self.config.rootless and hasattr(os, "getuid"):
                xdg_runtime = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
                try:
                    self._client = docker.DockerClient(
                        base_url=f"unix://{xdg_runtime}/docker.sock"
                    )
                except DockerException:
                    self._client = docker.DockerClient.from_env()
            else:
                self._client = docker.DockerClient.from_env()

            self.logger.info("docker_client_connected", rootless=self.config.rootless)

        return self._client

    async def _call(self, func: Any, *args: Any, timeout: float | None = None, **kwargs: Any) -> Any:
        """Run a blocking docker-py call in a thread with a timeout."""
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs),
            timeout=timeout or self.config.health_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Availability and capacity
    # ------------------------------------------------------------------

    async def is_backend_available(self) -> bool:
        """Probe whether the Docker daemon is reachable."""
        try:
            client = await self._call(self._get_client)
            await self._call(client.ping)
            return True
        except (DockerException, asyncio.TimeoutError, OSError) as e:
            self.logger.warning(
                "docker_unavailable",
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    async def count_active_containers(self) -> int:
        """Number of running containers carrying the managed label."""
        client = await self._call(self._get_client)
        containers = await self._call(
            client.containers.list,
            filters={"label": f"{MANAGED_LABEL}=true", "status": "running"},
        )
        return len(containers)

    async def _reserve_slot(self, session_id: str) -> None:
        async with self._cap_lock:
            try:
                active = await self.count_active_containers()
            except (DockerException, asyncio.TimeoutError) as e:
                raise ContainerError(
                    ContainerErrorCode.DOCKER_UNAVAILABLE,
                    f"Docker is not reachable: {e}",
                ) from e

            in_use = active + len(self._reserved)
            if self.max_containers is not None and in_use >= self.max_containers:
                self.audit.record(
                    SecurityEventType.CONTAINER_CREATED,
                    session_id=session_id,
                    success=False,
                    error="container limit reached",
                    active=in_use,
                    limit=self.max_containers,
                )
                raise ResourceExhaustedError(in_use, self.max_containers)
            self._reserved.add(session_id)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def _volumes(self, request: SandboxRequest) -> dict[str, dict[str, str]]:
        worktree = str(request.worktree_path.expanduser().resolve())
        volumes: dict[str, dict[str, str]] = {
            worktree: {"bind": WORKSPACE_MOUNT, "mode": "rw"},
        }
        # git inside the worktree resolves objects through the common dir
        if request.git_common_dir is not None:
            common = str(request.git_common_dir)
            volumes[common] = {"bind": common, "mode": "rw"}
        for mount in request.extra_mounts:
            host, bind = mount.to_docker_volume()
            volumes[host] = bind
        return volumes

    def _run_sync(self, request: SandboxRequest, domains: list[str]) -> Any:
        client = self._get_client()
        name = f"agentos-{request.session_id}"

        try:
            stale = client.containers.get(name)
            stale.remove(force=True)
            self.logger.warning("stale_container_removed", name=name)
        except NotFound:
            pass

        return client.containers.run(
            self.config.image,
            command=["sleep", "infinity"],
            name=name,
            detach=True,
            working_dir=WORKSPACE_MOUNT,
            volumes=self._volumes(request),
            cap_add=["NET_ADMIN", "NET_RAW"],
            security_opt=["no-new-privileges"],
            mem_limit=self.config.memory_limit,
            nano_cpus=int(self.config.cpu_limit * 1_000_000_000),
            pids_limit=self.config.pids_limit,
            ulimits=[Ulimit(name="nofile", soft=1024, hard=2048)],
            environment={"ALLOWED_DOMAINS": ",".join(domains)},
            labels={MANAGED_LABEL: "true", SESSION_LABEL: request.session_id},
        )

    async def _create(self, request: SandboxRequest) -> str:
        domains = merge_with_defaults(request.allowed_domains)

        try:
            container = await asyncio.to_thread(self._run_sync, request, domains)
        except ImageNotFound as e:
            raise ContainerError(
                ContainerErrorCode.CONTAINER_CREATE_FAILED,
                f"Sandbox image '{self.config.image}' not found",
            ) from e
        except (APIError, DockerException) as e:
            raise ContainerError(
                ContainerErrorCode.CONTAINER_CREATE_FAILED,
                f"Failed to create container: {e}",
            ) from e

        try:
            result = await asyncio.to_thread(
                container.exec_run,
                [FIREWALL_SCRIPT],
                user="root",
                environment={"ALLOWED_DOMAINS": ",".join(domains)},
            )
        except DockerException as e:
            self.audit.record(
                SecurityEventType.FIREWALL_INIT,
                session_id=request.session_id,
                container_id=container.id,
                success=False,
                error=str(e)[-500:],
                domain_count=len(domains),
            )
            await self.destroy_container(container.id, request.session_id)
            raise ContainerError(
                ContainerErrorCode.FIREWALL_INIT_FAILED,
                f"Firewall initialization failed: {e}",
            ) from e

        firewall_ok = result.exit_code == 0
        self.audit.record(
            SecurityEventType.FIREWALL_INIT,
            session_id=request.session_id,
            container_id=container.id,
            success=firewall_ok,
            error=None if firewall_ok else _decode(result.output)[-500:],
            domain_count=len(domains),
        )
        if not firewall_ok:
            await self.destroy_container(container.id, request.session_id)
            raise ContainerError(
                ContainerErrorCode.FIREWALL_INIT_FAILED,
                f"Firewall initialization exited with code {result.exit_code}",
            )

        return container.id

    async def create_container(self, request: SandboxRequest) -> str:
        """Create, start, and firewall a sandbox container.

        Args:
            request: Sandbox parameters (mounts and domains already validated)

        Returns:
            The container id

        Raises:
            ResourceExhaustedError: If the container cap is reached
            ContainerError: If creation or firewall setup fails or times out
        """
        await self._reserve_slot(request.session_id)
        try:
            container_id = await asyncio.wait_for(
                self._create(request), timeout=self.config.create_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            await self._remove_by_name(f"agentos-{request.session_id}", request.session_id)
            self.audit.record(
                SecurityEventType.CONTAINER_CREATED,
                session_id=request.session_id,
                success=False,
                error="creation timed out",
            )
            raise ContainerError(
                ContainerErrorCode.CONTAINER_CREATE_FAILED,
                f"Container creation timed out after {self.config.create_timeout_seconds}s",
            ) from e
        except ContainerError as e:
            self.audit.record(
                SecurityEventType.CONTAINER_CREATED,
                session_id=request.session_id,
                success=False,
                error=e.message,
            )
            raise
        finally:
            self._reserved.discard(request.session_id)

        self.audit.record(
            SecurityEventType.CONTAINER_CREATED,
            session_id=request.session_id,
            container_id=container_id,
            success=True,
            worktree_path=str(request.worktree_path),
        )
        return container_id

    async def _remove_by_name(self, name: str, session_id: str) -> None:
        try:
            client = await self._call(self._get_client)
            container = await self._call(client.containers.get, name)
        except (NotFound, DockerException, asyncio.TimeoutError):
            return
        await self.destroy_container(container.id, session_id)

    # ------------------------------------------------------------------
    # Health probe
    # ------------------------------------------------------------------

    async def _probe(self, container_id: str, worktree_path: Path) -> ContainerHealthResult:
        client = await self._call(self._get_client)
        try:
            container = await self._call(client.containers.get, container_id)
        except NotFound:
            return ContainerHealthResult(
                healthy=False,
                error="Container does not exist",
                error_code=ContainerErrorCode.CONTAINER_NOT_FOUND,
            )

        await self._call(container.reload)
        if container.status != "running":
            return ContainerHealthResult(
                healthy=False,
                error=f"Container is {container.status}",
                error_code=ContainerErrorCode.CONTAINER_STOPPED,
            )

        firewall = await self._call(
            container.exec_run, ["iptables", "-L", "OUTPUT", "-n"], user="root"
        )
        if firewall.exit_code != 0 or "REJECT" not in _decode(firewall.output):
            return ContainerHealthResult(
                healthy=False,
                error="Egress firewall is not active",
                error_code=ContainerErrorCode.CONTAINER_UNHEALTHY,
            )

        expected = str(worktree_path.expanduser().resolve())
        mounts = container.attrs.get("Mounts", [])
        source = next(
            (m.get("Source") for m in mounts if m.get("Destination") == WORKSPACE_MOUNT),
            None,
        )
        if source != expected:
            return ContainerHealthResult(
                healthy=False,
                error=f"/workspace is mounted from {source!r}, expected {expected!r}",
                error_code=ContainerErrorCode.MOUNT_MISMATCH,
            )

        writable = await self._call(container.exec_run, ["test", "-w", WORKSPACE_MOUNT])
        if writable.exit_code != 0:
            return ContainerHealthResult(
                healthy=False,
                error="/workspace is not writable",
                error_code=ContainerErrorCode.CONTAINER_UNHEALTHY,
            )

        return ContainerHealthResult(healthy=True)

    async def verify_container_health(
        self, container_id: str, worktree_path: Path, session_id: str | None = None
    ) -> ContainerHealthResult:
        """Run the post-start health probe.

        Steps, in order: container exists, is running, egress firewall is
        active, /workspace is mounted from the worktree, /workspace is
        writable. The first failing step decides the result.

        Args:
            container_id: Container to probe
            worktree_path: Worktree expected behind /workspace
            session_id: Owning session, for the audit record

        Returns:
            ContainerHealthResult (never raises)
        """
        try:
            result = await self._probe(container_id, worktree_path)
        except (DockerException, asyncio.TimeoutError) as e:
            result = ContainerHealthResult(
                healthy=False,
                error=f"Health check failed: {e or type(e).__name__}",
                error_code=ContainerErrorCode.HEALTH_CHECK_FAILED,
            )

        self.audit.record(
            SecurityEventType.CONTAINER_HEALTH_CHECK,
            session_id=session_id or "unknown",
            container_id=container_id,
            success=result.healthy,
            error=result.error,
        )
        return result

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------

    def _stop_and_remove(self, container_id: str) -> None:
        container = self._get_client().containers.get(container_id)
        container.stop(timeout=5)
        container.remove()

    def _force_remove(self, container_id: str) -> None:
        self._get_client().containers.get(container_id).remove(force=True)

    async def destroy_container(self, container_id: str, session_id: str) -> bool:
        """Stop and remove a container, best effort.

        Retries stop+remove with linear backoff, then forces removal. Never
        raises; a container that survives is logged as orphaned.

        Returns:
            True if the container is gone
        """
        last_error: str | None = None

        for attempt in range(1, self.config.destroy_retries + 1):
            try:
                await self._call(self._stop_and_remove, container_id, timeout=30)
                break
            except NotFound:
                break
            except (DockerException, asyncio.TimeoutError) as e:
                last_error = str(e) or type(e).__name__
                self.logger.warning(
                    "container_destroy_retry",
                    container_id=container_id,
                    attempt=attempt,
                    error=last_error,
                )
                if attempt < self.config.destroy_retries:
                    await asyncio.sleep(self.destroy_backoff_seconds * attempt)
        else:
            try:
                await self._call(self._force_remove, container_id, timeout=30)
            except NotFound:
                pass
            except (DockerException, asyncio.TimeoutError) as e:
                last_error = str(e) or type(e).__name__
                self.logger.error(
                    "orphaned_container",
                    container_id=container_id,
                    session_id=session_id,
                    error=last_error,
                    message="Orphaned container - manual cleanup required",
                )
                self.audit.record(
                    SecurityEventType.CONTAINER_DESTROYED,
                    session_id=session_id,
                    container_id=container_id,
                    success=False,
                    error=last_error,
                )
                return False

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
        """Run ``argv`` inside the container, from /workspace."""
        if container_id is None:
            return argv, cwd
        return ["docker", "exec", "-it", "-w", WORKSPACE_MOUNT, container_id, *argv], cwd


def _decode(output: Any) -> str:
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return str(output or "")
