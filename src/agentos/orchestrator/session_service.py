"""Session service: the mutating entry points for agent sessions.

Every request-facing operation goes through SessionService, which checks
preconditions synchronously, applies lifecycle guards, and hands
provisioning to the setup pipeline as a supervised background task.
Callers never wait for provisioning; they observe it through the status
hub and the store.

Example usage:
    >>> service = SessionService(session_factory, pipeline, supervisor, hub)
    >>> row = await service.create_session(
    ...     SessionCreate(
    ...         name="Login form",
    ...         working_directory="/src/app",
    ...         use_worktree=True,
    ...         feature_name="login form",
    ...         auto_approve=True,
    ...     )
    ... )
    >>> row.lifecycle_status
    <LifecycleStatus.creating: 'creating'>
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field

from agentos.database.models.session import LifecycleStatus, Session, SetupStatus
from agentos.database.queries.session import (
    create_session,
    get_active_siblings_by_worktree,
    get_session,
    list_sessions,
    rename_session,
    reset_for_reboot,
    soft_delete_session,
)
from agentos.errors import (
    LifecycleConflictError,
    NotARepositoryError,
    PreconditionError,
    SessionNotFoundError,
)
from agentos.logging import get_logger
from agentos.orchestrator.setup_pipeline import SetupPipeline, SetupRequest
from agentos.orchestrator.state_machine import (
    LifecycleStateMachine,
    SessionFactory,
    require_deletable,
    require_ready,
)
from agentos.orchestrator.status_hub import StatusHub
from agentos.orchestrator.supervisor import BackgroundTaskSupervisor
from agentos.pipeline.worktree import WorktreeInfo, slugify
from agentos.validators.domains import parse_domains, serialize_domains, validate_domains
from agentos.validators.mounts import parse_mounts, serialize_mounts, validate_mounts


class SessionCreate(BaseModel):
    """Request to create a session."""

    name: str = Field(min_length=1, max_length=200)
    working_directory: str = Field(min_length=1)
    project_id: str = "uncategorized"
    agent_type: str = "claude"
    use_worktree: bool = False
    feature_name: str | None = None
    base_branch: str = "main"
    auto_approve: bool = False
    extra_mounts: list[dict[str, Any]] = Field(default_factory=list)
    allowed_domains: list[str] = Field(default_factory=list)
    initial_prompt: str | None = None


class SessionFork(BaseModel):
    """Request to fork a ready session.

    ``isolated`` branches a new worktree from the parent's current branch;
    ``direct`` shares the parent's worktree as a sibling.
    """

    name: str | None = None
    mode: Literal["isolated", "direct"] = "direct"
    feature_name: str | None = None


class DeleteResult(BaseModel):
    """What a deletion removed."""

    session_id: str
    has_uncommitted_changes: bool = False
    worktree_deleted: bool = False
    branch_deleted: bool = False
    sibling_count: int = 0


class WorktreeStatus(BaseModel):
    """Data for the deletion confirmation prompt."""

    has_worktree: bool
    has_uncommitted_changes: bool = False
    branch_has_changes: bool = False
    sibling_count: int = 0


class SessionService:
    """Creates, forks, renames, reboots, and deletes sessions.

    Attributes:
        session_factory: Factory for fresh AsyncSession instances
        pipeline: Setup pipeline (also provides the worktree, sandbox, and
            process backends)
        supervisor: Background task supervisor for pipeline runs
        hub: Status hub
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        pipeline: SetupPipeline,
        supervisor: BackgroundTaskSupervisor,
        hub: StatusHub,
    ) -> None:
        self.session_factory = session_factory
        self.pipeline = pipeline
        self.supervisor = supervisor
        self.hub = hub
        self.worktrees = pipeline.worktrees
        self.sandbox = pipeline.sandbox
        self.processes = pipeline.processes
        self.lifecycle = LifecycleStateMachine(session_factory)
        self.logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, session_id: UUID) -> Session:
        """Fetch a live session.

        Raises:
            SessionNotFoundError: If it does not exist or was deleted
        """
        async with self.session_factory() as db:
            row = await get_session(db, session_id)
        if row is None:
            raise SessionNotFoundError(str(session_id))
        return row

    async def list_all(
        self,
        lifecycle_status: LifecycleStatus | None = None,
        project_id: str | None = None,
    ) -> list[Session]:
        async with self.session_factory() as db:
            return await list_sessions(
                db,
                lifecycle_filter=[lifecycle_status] if lifecycle_status else None,
                project_id=project_id,
            )

    async def _sibling_count(self, row: Session) -> int:
        if not row.worktree_path:
            return 0
        async with self.session_factory() as db:
            siblings = await get_active_siblings_by_worktree(
                db, row.worktree_path, exclude_id=row.id
            )
        return len(siblings)

    async def worktree_status(self, session_id: UUID) -> WorktreeStatus:
        """Uncommitted work, divergent commits, and sibling count."""
        row = await self.get(session_id)
        if not row.worktree_path:
            return WorktreeStatus(has_worktree=False)

        path = Path(row.worktree_path)
        has_uncommitted = await self.worktrees.has_uncommitted_changes(path)
        has_commits = False
        if row.base_branch:
            has_commits = await self.worktrees.branch_has_changes(path, row.base_branch)

        return WorktreeStatus(
            has_worktree=True,
            has_uncommitted_changes=has_uncommitted,
            branch_has_changes=has_commits,
            sibling_count=await self._sibling_count(row),
        )

    # ------------------------------------------------------------------
    # Create / fork / reboot
    # ------------------------------------------------------------------

    def _spawn_setup(self, request: SetupRequest) -> None:
        self.supervisor.spawn(
            str(request.session_id),
            self.pipeline.run(request),
            self.pipeline.failure_handler(request),
        )

    def _request_from_row(
        self,
        row: Session,
        feature_name: str | None = None,
        shared_worktree: WorktreeInfo | None = None,
    ) -> SetupRequest:
        return SetupRequest(
            session_id=row.id,
            tmux_name=row.tmux_name,
            source_path=Path(row.source_path or row.working_directory),
            use_worktree=row.use_worktree,
            feature_name=feature_name or row.name,
            base_branch=row.base_branch or "main",
            shared_worktree=shared_worktree,
            auto_approve=row.auto_approve,
            agent_type=row.agent_type,
            extra_mounts=parse_mounts(row.extra_mounts),
            allowed_domains=parse_domains(row.allowed_domains),
            initial_prompt=row.initial_prompt,
        )

    async def _announce(self, row: Session) -> None:
        await self.hub.update_status(
            str(row.id),
            status="idle",
            lifecycle_status=LifecycleStatus.creating,
            setup_status=SetupStatus.pending,
            unset=("setup_error",),
        )

    async def create_session(self, request: SessionCreate) -> Session:
        """Validate, persist, and start provisioning a new session.

        Raises:
            PreconditionError: Missing isolation parameters for a sandboxed
                request, or a worktree request without a feature name
            NotARepositoryError: Worktree requested for a non-repository
            MountValidationError: Invalid extra mounts
            DomainValidationError: Invalid domains
        """
        source = Path(request.working_directory).expanduser()

        if request.auto_approve and not request.use_worktree:
            raise PreconditionError(
                "Auto-approve sessions require an isolated worktree",
                details={"field": "use_worktree"},
            )
        if request.use_worktree:
            if not request.feature_name or not slugify(request.feature_name):
                raise PreconditionError(
                    "A feature name with at least one letter or digit is required "
                    "when creating a worktree",
                    details={"field": "feature_name"},
                )
            if not await self.worktrees.is_repository(source):
                raise NotARepositoryError(
                    f"Not a git repository: {source}",
                    details={"working_directory": str(source)},
                )

        mounts = validate_mounts(request.extra_mounts)
        domains = validate_domains(request.allowed_domains)

        async with self.session_factory() as db:
            row = await create_session(
                db,
                name=request.name,
                working_directory=str(source),
                project_id=request.project_id,
                agent_type=request.agent_type,
                setup_status=SetupStatus.pending,
                auto_approve=request.auto_approve,
                extra_mounts=serialize_mounts(mounts),
                allowed_domains=serialize_domains(domains),
                initial_prompt=request.initial_prompt,
                base_branch=request.base_branch if request.use_worktree else None,
                use_worktree=request.use_worktree,
            )

        await self._announce(row)
        self._spawn_setup(self._request_from_row(row, feature_name=request.feature_name))
        return row

    async def fork_session(self, parent_id: UUID, request: SessionFork) -> Session:
        """Fork a ready session.

        Children inherit agent type, auto-approve, mounts, and domains.

        Raises:
            SessionNotFoundError: If the parent does not exist
            LifecycleConflictError: If the parent is not ready
            PreconditionError: Isolated fork without a usable feature name or
                parent branch
        """
        parent = await self.get(parent_id)
        require_ready(parent, "fork")

        source = parent.source_path or parent.working_directory
        shared: WorktreeInfo | None = None
        common: dict[str, Any] = dict(
            project_id=parent.project_id,
            agent_type=parent.agent_type,
            setup_status=SetupStatus.pending,
            auto_approve=parent.auto_approve,
            extra_mounts=parent.extra_mounts,
            allowed_domains=parent.allowed_domains,
            parent_session_id=parent.id,
            source_path=source,
        )

        if request.mode == "isolated":
            if not request.feature_name or not slugify(request.feature_name):
                raise PreconditionError(
                    "Feature name is required when using isolated mode",
                    details={"field": "feature_name"},
                )
            branch_from = Path(parent.worktree_path or parent.working_directory)
            try:
                base_branch = await self.worktrees.current_branch(branch_from)
            except Exception as e:
                raise PreconditionError(
                    "Could not determine current branch for worktree creation",
                    details={"path": str(branch_from), "error": str(e)},
                ) from e

            name = request.name or request.feature_name
            async with self.session_factory() as db:
                row = await create_session(
                    db,
                    name=name,
                    working_directory=source,
                    base_branch=base_branch,
                    use_worktree=True,
                    **common,
                )
        else:
            name = request.name or f"{parent.name} (fork)"
            if parent.worktree_path and parent.branch_name and parent.base_branch:
                shared = WorktreeInfo(
                    path=Path(parent.worktree_path),
                    branch_name=parent.branch_name,
                    base_branch=parent.base_branch,
                    source_path=Path(source),
                )
            async with self.session_factory() as db:
                row = await create_session(
                    db,
                    name=name,
                    working_directory=parent.worktree_path or parent.working_directory,
                    worktree_path=parent.worktree_path,
                    branch_name=parent.branch_name,
                    base_branch=parent.base_branch,
                    **common,
                )

        self.logger.info(
            "session_forked",
            parent_session_id=str(parent.id),
            session_id=str(row.id),
            mode=request.mode,
        )
        await self._announce(row)
        self._spawn_setup(
            self._request_from_row(row, feature_name=request.feature_name, shared_worktree=shared)
        )
        return row

    async def _parent_worktree(self, row: Session) -> WorktreeInfo | None:
        """The worktree a direct fork shares with its live parent, if any."""
        if row.use_worktree or row.parent_session_id is None:
            return None
        async with self.session_factory() as db:
            parent = await get_session(db, row.parent_session_id)
        if (
            parent is None
            or parent.lifecycle_status == LifecycleStatus.deleting
            or not (parent.worktree_path and parent.branch_name and parent.base_branch)
        ):
            return None
        return WorktreeInfo(
            path=Path(parent.worktree_path),
            branch_name=parent.branch_name,
            base_branch=parent.base_branch,
            source_path=Path(row.source_path or parent.source_path or parent.working_directory),
        )

    async def reboot_session(self, session_id: UUID) -> Session:
        """Re-run setup for a failed session with its original request.

        A direct fork runs in its parent's worktree again; if the parent or
        its worktree is gone, an auto-approved fork fails setup rather than
        running unsandboxed in the source repository.

        Raises:
            LifecycleConflictError: If the session is not failed, or its
                previous setup run has not finished yet
        """
        row = await self.get(session_id)
        if row.lifecycle_status != LifecycleStatus.failed:
            raise LifecycleConflictError(
                f"Cannot reboot session in '{row.lifecycle_status.value}' state",
                details={"lifecycle_status": row.lifecycle_status.value},
            )
        if self.supervisor.is_running(str(session_id)):
            raise LifecycleConflictError(
                "Previous setup run is still finishing",
                details={"lifecycle_status": row.lifecycle_status.value},
            )
        shared = await self._parent_worktree(row)

        async with self.session_factory() as db:
            updated = await reset_for_reboot(
                db, session_id, working_directory=row.source_path or row.working_directory
            )
        if updated is None:
            raise LifecycleConflictError("Session changed state before reboot")

        # Stale process from the failed run, if any
        await self.processes.kill_session(updated.tmux_name)

        await self._announce(updated)
        self._spawn_setup(self._request_from_row(updated, shared_worktree=shared))
        self.logger.info("session_rebooted", session_id=str(session_id))
        return updated

    # ------------------------------------------------------------------
    # Rename
    # ------------------------------------------------------------------

    async def rename(self, session_id: UUID, name: str) -> Session:
        """Rename a ready session and its worktree branch.

        A git branch rename failure is logged; the display name still changes.

        Raises:
            PreconditionError: If the name has no letter or digit
            LifecycleConflictError: If the session is not ready
        """
        new_slug = slugify(name)
        if not new_slug:
            raise PreconditionError(
                "Session name must contain at least one alphanumeric character"
            )

        row = await self.get(session_id)
        require_ready(row, "rename")

        new_branch: str | None = None
        if row.worktree_path and self.worktrees.is_managed_worktree(Path(row.worktree_path)):
            path = Path(row.worktree_path)
            candidate = self.worktrees.branch_name_for(name)
            try:
                current = await self.worktrees.current_branch(path)
                if current != candidate:
                    await self.worktrees.rename_branch(path, current, candidate)
                    new_branch = candidate
            except Exception as e:
                self.logger.warning(
                    "branch_rename_failed",
                    session_id=str(session_id),
                    error=str(e),
                    error_type=type(e).__name__,
                )

        async with self.session_factory() as db:
            updated = await rename_session(db, session_id, name, branch_name=new_branch)
        if updated is None:
            raise LifecycleConflictError("Session changed state before rename")

        if new_branch is not None:
            await self._sync_sibling_branch(updated, new_branch)
        return updated

    async def _sync_sibling_branch(self, row: Session, branch_name: str) -> None:
        """Siblings share the worktree, so they share the renamed branch."""
        if not row.worktree_path:
            return
        async with self.session_factory() as db:
            siblings = await get_active_siblings_by_worktree(
                db, row.worktree_path, exclude_id=row.id
            )
        for sibling in siblings:
            if sibling.lifecycle_status != LifecycleStatus.ready:
                continue
            async with self.session_factory() as db:
                await rename_session(db, sibling.id, sibling.name, branch_name=branch_name)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_session(self, session_id: UUID) -> DeleteResult:
        """Delete a session and release what it alone holds.

        Raises:
            SessionNotFoundError: If it does not exist
            LifecycleConflictError: If a delete is already in flight
        """
        row = await self.get(session_id)
        require_deletable(row)

        row = await self.lifecycle.transition(session_id, LifecycleStatus.deleting)
        await self.hub.update_status(
            str(session_id), status="idle", lifecycle_status=LifecycleStatus.deleting
        )
        return await self.finish_delete(row)

    async def finish_delete(self, row: Session) -> DeleteResult:
        """Tear down a session already marked ``deleting``.

        Teardown failures are logged and never stop the deletion.
        """
        sid = str(row.id)
        result = DeleteResult(session_id=sid)

        if row.worktree_path:
            result.sibling_count = await self._sibling_count(row)

        try:
            await self.processes.kill_session(row.tmux_name)
        except Exception as e:
            self.logger.warning("process_kill_failed", session_id=sid, error=str(e))

        if row.container_id:
            await self.sandbox.destroy_container(row.container_id, sid)

        if (
            row.worktree_path
            and result.sibling_count == 0
            and self.worktrees.is_managed_worktree(Path(row.worktree_path))
        ):
            path = Path(row.worktree_path)
            try:
                result.has_uncommitted_changes = (
                    await self.worktrees.has_uncommitted_changes(path)
                )
                delete_branch = False
                if row.base_branch:
                    delete_branch = not await self.worktrees.branch_has_changes(
                        path, row.base_branch
                    )
                deletion = await self.worktrees.delete_worktree(
                    path,
                    repo_common_dir=Path(row.source_path) / ".git" if row.source_path else None,
                    delete_branch=delete_branch,
                )
                result.worktree_deleted = deletion.removed
                result.branch_deleted = deletion.branch_deleted
            except Exception as e:
                self.logger.error(
                    "worktree_delete_failed",
                    session_id=sid,
                    path=str(path),
                    error=str(e),
                    message="Orphaned resource - manual cleanup required",
                )
        elif row.worktree_path:
            self.logger.info(
                "worktree_kept_for_siblings",
                session_id=sid,
                path=row.worktree_path,
                sibling_count=result.sibling_count,
            )

        async with self.session_factory() as db:
            await soft_delete_session(db, row.id)
        await self.hub.clear_status(sid)

        self.logger.info(
            "session_deleted",
            session_id=sid,
            worktree_deleted=result.worktree_deleted,
            branch_deleted=result.branch_deleted,
        )
        return result
