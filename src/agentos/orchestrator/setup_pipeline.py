"""Setup pipeline: provisions a session and rolls back on failure.

The pipeline owns a session while its lifecycle is ``creating`` and walks
the setup states in strict forward order, persisting and broadcasting each
one before doing its work:

    pending -> creating_worktree -> [init_container] -> init_submodules
            -> installing_deps -> starting_session -> ready

``init_container`` runs only for auto-approved sessions. Sessions without
a dedicated worktree skip the worktree, submodule, and dependency steps.
Submodule failures are logged and ignored; every other failure stops the
pipeline and triggers rollback:

1. Stop the agent process if it was started
2. Destroy the container if one was created
3. Delete the worktree if this run created it
4. Restore the isolation fields to their pre-setup values
5. Move the lifecycle to ``failed`` with ``setup_error``

Cleanup steps are best-effort and never raise. The lifecycle flips to
``failed`` only after cleanup has been attempted.

Example usage:
    >>> pipeline = SetupPipeline(session_factory, worktrees, sandbox, processes, bootstrapper, hub)
    >>> supervisor.spawn(str(session_id), pipeline.run(request), pipeline.failure_handler(request))
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from agentos.database.models.session import (
    ContainerHealth,
    LifecycleStatus,
    SandboxStatus,
    SetupStatus,
)
from agentos.database.queries.session import (
    clear_isolation,
    compare_and_set_lifecycle,
    set_sandbox,
    set_worktree,
    update_setup_status,
)
from agentos.errors import (
    AgentosError,
    ContainerError,
    ContainerErrorCode,
    LifecycleConflictError,
    PreconditionError,
)
from agentos.logging import bind_session_context, get_logger
from agentos.orchestrator.state_machine import (
    InvalidTransitionError,
    SessionFactory,
    validate_setup_transition,
)
from agentos.orchestrator.status_hub import StatusHub
from agentos.orchestrator.supervisor import FailureHandler
from agentos.pipeline.container import SandboxBackend, SandboxRequest
from agentos.pipeline.env_setup import DependencyBootstrapper
from agentos.pipeline.terminal import ProcessBackend, build_agent_command
from agentos.pipeline.worktree import WorktreeBackend, WorktreeInfo
from agentos.validators.mounts import MountConfig


class SetupRequest(BaseModel):
    """Everything the pipeline needs to provision one session.

    Attributes:
        session_id: Session being provisioned
        tmux_name: Terminal session name for the agent process
        source_path: Pre-setup working directory (restored on rollback)
        use_worktree: Create a dedicated worktree
        feature_name: Name slugged into the worktree branch
        base_branch: Branch the worktree starts from
        project_name: Worktree directory prefix
        shared_worktree: Existing worktree to run in (direct fork)
        auto_approve: Run sandboxed without permission prompts
        agent_type: Agent CLI identifier
        extra_mounts: Validated extra mounts
        allowed_domains: Validated extra egress domains
        initial_prompt: Prompt passed to the agent on start
    """

    model_config = ConfigDict(frozen=True)

    session_id: UUID
    tmux_name: str
    source_path: Path
    use_worktree: bool = False
    feature_name: str | None = None
    base_branch: str = "main"
    project_name: str | None = None
    shared_worktree: WorktreeInfo | None = None
    auto_approve: bool = False
    agent_type: str = "claude"
    extra_mounts: list[MountConfig] = Field(default_factory=list)
    allowed_domains: list[str] = Field(default_factory=list)
    initial_prompt: str | None = None


@dataclass
class _Provisioned:
    """Resources created so far by one pipeline run."""

    worktree: WorktreeInfo | None = None
    container_id: str | None = None
    process_name: str | None = None


class SetupPipeline:
    """Runs the provisioning steps for a session.

    Attributes:
        session_factory: Factory for fresh AsyncSession instances
        worktrees: Worktree backend
        sandbox: Sandbox backend
        processes: Agent process backend
        bootstrapper: Dependency bootstrapper for new worktrees
        hub: Status hub progress is broadcast to
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        worktrees: WorktreeBackend,
        sandbox: SandboxBackend,
        processes: ProcessBackend,
        bootstrapper: DependencyBootstrapper,
        hub: StatusHub,
    ) -> None:
        self.session_factory = session_factory
        self.worktrees = worktrees
        self.sandbox = sandbox
        self.processes = processes
        self.bootstrapper = bootstrapper
        self.hub = hub
        self.logger = get_logger(__name__)

    async def _advance(
        self, request: SetupRequest, current: SetupStatus, target: SetupStatus
    ) -> SetupStatus:
        """Persist and broadcast the next setup state.

        Raises:
            InvalidTransitionError: If ``target`` does not follow ``current``
            LifecycleConflictError: If the session left ``creating``
        """
        if current != target and not validate_setup_transition(current, target):
            raise InvalidTransitionError(current, target, str(request.session_id))

        async with self.session_factory() as db:
            row = await update_setup_status(db, request.session_id, target)
        if row is None:
            raise LifecycleConflictError(
                "Session is no longer being set up",
                details={"setup_status": target.value},
            )

        await self.hub.update_status(
            str(request.session_id),
            setup_status=target,
            lifecycle_status=LifecycleStatus.creating,
        )
        self.logger.info("setup_step", setup_status=target.value)
        return target

    async def run(self, request: SetupRequest) -> None:
        """Provision the session; on any failure roll back and mark it failed.

        Never raises for provisioning failures; the outcome is persisted and
        broadcast.
        """
        bind_session_context(str(request.session_id))
        provisioned = _Provisioned()
        self.logger.info(
            "setup_started",
            use_worktree=request.use_worktree,
            auto_approve=request.auto_approve,
            direct=request.shared_worktree is not None,
        )

        try:
            await self._provision(request, provisioned)
        except Exception as e:
            await self.rollback(request, provisioned, e)
            return

        self.logger.info("setup_completed", container_id=provisioned.container_id)

    async def _provision(self, request: SetupRequest, provisioned: _Provisioned) -> None:
        sid = str(request.session_id)
        state = await self._advance(request, SetupStatus.pending, SetupStatus.pending)
        work_path = request.source_path

        if request.shared_worktree is not None:
            shared = request.shared_worktree
            work_path = shared.path
            async with self.session_factory() as db:
                await set_worktree(
                    db, request.session_id, str(shared.path), shared.branch_name, shared.base_branch
                )
        elif request.use_worktree:
            state = await self._advance(request, state, SetupStatus.creating_worktree)
            info = await self.worktrees.create_worktree(
                request.source_path,
                request.feature_name or sid[:8],
                request.base_branch,
                project_name=request.project_name,
            )
            provisioned.worktree = info
            work_path = info.path
            async with self.session_factory() as db:
                await set_worktree(
                    db, request.session_id, str(info.path), info.branch_name, info.base_branch
                )

        if request.auto_approve:
            if provisioned.worktree is None and request.shared_worktree is None:
                raise PreconditionError(
                    "Auto-approve sessions require an isolated worktree",
                    details={"field": "use_worktree"},
                )
            state = await self._advance(request, state, SetupStatus.init_container)
            await self._start_sandbox(request, work_path, provisioned)

        if provisioned.worktree is not None:
            state = await self._advance(request, state, SetupStatus.init_submodules)
            try:
                await self.worktrees.init_submodules(work_path)
            except Exception as e:
                self.logger.warning(
                    "submodule_init_failed",
                    path=str(work_path),
                    error=str(e),
                    error_type=type(e).__name__,
                )

            state = await self._advance(request, state, SetupStatus.installing_deps)
            result = await self.bootstrapper.bootstrap_or_raise(request.source_path, work_path)
            self.logger.info(
                "dependencies_installed",
                package_manager=result.package_manager,
                env_files=result.env_files_copied,
            )

        state = await self._advance(request, state, SetupStatus.starting_session)
        argv = build_agent_command(
            request.agent_type,
            auto_approve=request.auto_approve,
            initial_prompt=request.initial_prompt,
        )
        cwd = work_path
        if provisioned.container_id is not None:
            argv, cwd = self.sandbox.wrap_command(provisioned.container_id, argv, work_path)
        await self.processes.start_session(request.tmux_name, argv, cwd)
        provisioned.process_name = request.tmux_name

        if not validate_setup_transition(state, SetupStatus.ready):
            raise InvalidTransitionError(state, SetupStatus.ready, sid)
        async with self.session_factory() as db:
            row = await compare_and_set_lifecycle(
                db,
                request.session_id,
                (LifecycleStatus.creating,),
                LifecycleStatus.ready,
                setup_status=SetupStatus.ready,
                setup_error=None,
            )
        if row is None:
            raise LifecycleConflictError("Session left setup before it became ready")

        await self.hub.update_status(
            sid,
            status="idle",
            setup_status=SetupStatus.ready,
            lifecycle_status=LifecycleStatus.ready,
            unset=("setup_error",),
        )

    async def _start_sandbox(
        self, request: SetupRequest, work_path: Path, provisioned: _Provisioned
    ) -> None:
        """Create the sandbox and gate it on a healthy probe.

        The container id is recorded on ``provisioned`` as soon as it exists,
        so rollback destroys it if anything after creation fails. An
        unhealthy sandbox is destroyed before this raises.

        Raises:
            ContainerError: If the backend is unavailable, creation fails,
                or the health probe fails
            ResourceExhaustedError: If the container cap is reached
        """
        sid = str(request.session_id)
        async with self.session_factory() as db:
            await set_sandbox(db, request.session_id, SandboxStatus.initializing)

        if not await self.sandbox.is_backend_available():
            raise ContainerError(
                ContainerErrorCode.DOCKER_UNAVAILABLE,
                "Sandbox backend is not available",
            )

        try:
            common_dir: Path | None = await self.worktrees.common_dir(work_path)
        except Exception as e:
            self.logger.warning("git_common_dir_unresolved", path=str(work_path), error=str(e))
            common_dir = None

        container_id = await self.sandbox.create_container(
            SandboxRequest(
                session_id=sid,
                worktree_path=work_path,
                git_common_dir=common_dir,
                extra_mounts=request.extra_mounts,
                allowed_domains=request.allowed_domains,
            )
        )
        provisioned.container_id = container_id

        health = await self.sandbox.verify_container_health(container_id, work_path, session_id=sid)
        if not health.healthy:
            await self.sandbox.destroy_container(container_id, sid)
            provisioned.container_id = None
            async with self.session_factory() as db:
                await set_sandbox(
                    db,
                    request.session_id,
                    SandboxStatus.failed,
                    container_health=ContainerHealth.unhealthy,
                )
            raise ContainerError(
                health.error_code or ContainerErrorCode.CONTAINER_UNHEALTHY,
                f"Sandbox health check failed: {health.error}",
                details={"container_id": container_id},
            )

        async with self.session_factory() as db:
            await set_sandbox(
                db,
                request.session_id,
                SandboxStatus.ready,
                container_id=container_id,
                container_health=ContainerHealth.healthy,
            )

    async def rollback(
        self,
        request: SetupRequest,
        provisioned: _Provisioned,
        error: BaseException,
    ) -> None:
        """Undo whatever this run created, then mark the session failed."""
        sid = str(request.session_id)
        if isinstance(error, AgentosError):
            message = error.message
        else:
            message = str(error) or type(error).__name__
        self.logger.error(
            "setup_failed",
            error=message,
            error_type=type(error).__name__,
        )

        if provisioned.process_name is not None:
            await self._best_effort(
                "process", self.processes.kill_session(provisioned.process_name)
            )

        if provisioned.container_id is not None:
            # destroy_container logs orphans itself and never raises
            await self._best_effort(
                "container", self.sandbox.destroy_container(provisioned.container_id, sid)
            )

        if provisioned.worktree is not None:
            await self._best_effort(
                "worktree",
                self.worktrees.delete_worktree(
                    provisioned.worktree.path,
                    repo_common_dir=provisioned.worktree.source_path / ".git",
                    delete_branch=True,
                ),
            )

        sandbox_values: dict[str, Any] = {}
        if request.auto_approve:
            sandbox_values["sandbox_status"] = SandboxStatus.failed

        async with self.session_factory() as db:
            await self._best_effort(
                "isolation_fields",
                clear_isolation(db, request.session_id, str(request.source_path)),
            )
        async with self.session_factory() as db:
            row = await self._best_effort(
                "lifecycle",
                compare_and_set_lifecycle(
                    db,
                    request.session_id,
                    (LifecycleStatus.creating,),
                    LifecycleStatus.failed,
                    setup_status=SetupStatus.failed,
                    setup_error=message,
                    **sandbox_values,
                ),
            )
        if row is None:
            # Deleted (or already failed) underneath the pipeline
            self.logger.warning("setup_failure_not_recorded", error=message)
            return

        await self.hub.update_status(
            sid,
            status="dead",
            setup_status=SetupStatus.failed,
            setup_error=message,
            lifecycle_status=LifecycleStatus.failed,
        )

    async def _best_effort(self, resource: str, awaitable: Any) -> Any:
        """Await a cleanup step; log and swallow its failure."""
        try:
            return await awaitable
        except Exception as e:
            self.logger.error(
                "rollback_step_failed",
                resource=resource,
                error=str(e),
                error_type=type(e).__name__,
                message="Orphaned resource - manual cleanup required",
            )
            return None

    def failure_handler(self, request: SetupRequest) -> FailureHandler:
        """Build a supervisor callback that records an escaped failure."""

        async def _on_failure(error: BaseException) -> None:
            await self.rollback(request, _Provisioned(), error)

        return _on_failure
