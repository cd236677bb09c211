"""Session endpoints for Agentos.

Mutating endpoints return as soon as the request is accepted; provisioning
continues in the background and is observed through ``GET /status/stream``
or by polling ``GET /sessions/{id}``.

Example:
    >>> from fastapi import FastAPI
    >>> from agentos.web.routes.sessions import create_sessions_router
    >>>
    >>> app = FastAPI()
    >>> app.include_router(create_sessions_router())
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from agentos.database.models.session import (
    ContainerHealth,
    LifecycleStatus,
    SandboxStatus,
    SetupStatus,
)
from agentos.errors import AgentosError
from agentos.logging import get_logger
from agentos.orchestrator.attachment import AttachResult
from agentos.orchestrator.session_service import (
    DeleteResult,
    SessionCreate,
    SessionFork,
    WorktreeStatus,
)
from agentos.web.routes.deps import get_attachments, get_service, to_http_error

if TYPE_CHECKING:
    from agentos.orchestrator.attachment import AttachmentCoordinator
    from agentos.orchestrator.session_service import SessionService

logger = get_logger(__name__)


class SessionResponse(BaseModel):
    """Session response model.

    Attributes:
        id: Session UUID.
        name: Display name.
        agent_type: Agent CLI identifier.
        project_id: Owning project.
        working_directory: Directory the agent runs in.
        lifecycle_status: creating, ready, failed, or deleting.
        setup_status: Current setup pipeline step.
        setup_error: Why setup failed, if it did.
        worktree_path: Dedicated or shared worktree.
        branch_name: Worktree branch.
        base_branch: Branch the worktree was created from.
        container_id: Sandbox container (or policy file) identifier.
        container_health: Last health probe result.
        sandbox_status: Sandbox provisioning state.
        parent_session_id: Fork parent.
        auto_approve: Unattended sandboxed execution.
        extra_mounts: Validated extra mounts.
        allowed_domains: Validated egress domains.
        created_at: Creation timestamp.
        updated_at: Last modification timestamp.
    """

    id: UUID
    name: str
    agent_type: str
    project_id: str
    working_directory: str
    lifecycle_status: LifecycleStatus
    setup_status: SetupStatus | None
    setup_error: str | None
    worktree_path: str | None
    branch_name: str | None
    base_branch: str | None
    container_id: str | None
    container_health: ContainerHealth | None
    sandbox_status: SandboxStatus | None
    parent_session_id: UUID | None
    auto_approve: bool
    extra_mounts: list[dict[str, Any]] | None
    allowed_domains: list[str] | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SessionRename(BaseModel):
    name: str = Field(min_length=1, max_length=200)


class AttachRequest(BaseModel):
    slot: str = Field(min_length=1, max_length=100)


def create_sessions_router() -> APIRouter:
    """Create session routes.

    Routes:
        GET /sessions/ - List sessions
        POST /sessions/ - Create a session (setup runs in the background)
        GET /sessions/{session_id} - Get one session
        PATCH /sessions/{session_id} - Rename a ready session
        DELETE /sessions/{session_id} - Delete a session and its resources
        POST /sessions/{session_id}/fork - Fork a ready session
        POST /sessions/{session_id}/reboot - Re-run setup for a failed session
        GET /sessions/{session_id}/worktree-status - Deletion confirmation data
        POST /sessions/{session_id}/attach - Attach a display slot
    """
    router = APIRouter(prefix="/sessions", tags=["sessions"])

    @router.get("/", response_model=list[SessionResponse])
    async def list_sessions_endpoint(
        lifecycle_status: LifecycleStatus | None = Query(  # noqa: B008
            None, description="Filter by lifecycle status"
        ),
        project_id: str | None = Query(None, description="Filter by project"),
        service: SessionService = Depends(get_service),  # noqa: B008
    ) -> list[SessionResponse]:
        rows = await service.list_all(lifecycle_status=lifecycle_status, project_id=project_id)
        logger.debug("sessions_listed", count=len(rows))
        return [SessionResponse.model_validate(r) for r in rows]

    @router.post("/", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
    async def create_session_endpoint(
        body: SessionCreate,
        service: SessionService = Depends(get_service),  # noqa: B008
    ) -> SessionResponse:
        try:
            row = await service.create_session(body)
        except AgentosError as exc:
            logger.warning("create_session_rejected", error=exc.message, code=exc.code)
            raise to_http_error(exc) from exc
        return SessionResponse.model_validate(row)

    @router.get("/{session_id}", response_model=SessionResponse)
    async def get_session_endpoint(
        session_id: UUID,
        service: SessionService = Depends(get_service),  # noqa: B008
    ) -> SessionResponse:
        try:
            row = await service.get(session_id)
        except AgentosError as exc:
            raise to_http_error(exc) from exc
        return SessionResponse.model_validate(row)

    @router.patch("/{session_id}", response_model=SessionResponse)
    async def rename_session_endpoint(
        session_id: UUID,
        body: SessionRename,
        service: SessionService = Depends(get_service),  # noqa: B008
    ) -> SessionResponse:
        try:
            row = await service.rename(session_id, body.name)
        except AgentosError as exc:
            raise to_http_error(exc) from exc
        return SessionResponse.model_validate(row)

    @router.delete("/{session_id}", response_model=DeleteResult)
    async def delete_session_endpoint(
        session_id: UUID,
        service: SessionService = Depends(get_service),  # noqa: B008
    ) -> DeleteResult:
        try:
            return await service.delete_session(session_id)
        except AgentosError as exc:
            logger.warning(
                "delete_session_rejected",
                session_id=str(session_id),
                error=exc.message,
                code=exc.code,
            )
            raise to_http_error(exc) from exc

    @router.post(
        "/{session_id}/fork",
        response_model=SessionResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def fork_session_endpoint(
        session_id: UUID,
        body: SessionFork,
        service: SessionService = Depends(get_service),  # noqa: B008
    ) -> SessionResponse:
        try:
            row = await service.fork_session(session_id, body)
        except AgentosError as exc:
            raise to_http_error(exc) from exc
        return SessionResponse.model_validate(row)

    @router.post("/{session_id}/reboot", response_model=SessionResponse)
    async def reboot_session_endpoint(
        session_id: UUID,
        service: SessionService = Depends(get_service),  # noqa: B008
    ) -> SessionResponse:
        try:
            row = await service.reboot_session(session_id)
        except AgentosError as exc:
            raise to_http_error(exc) from exc
        return SessionResponse.model_validate(row)

    @router.get("/{session_id}/worktree-status", response_model=WorktreeStatus)
    async def worktree_status_endpoint(
        session_id: UUID,
        service: SessionService = Depends(get_service),  # noqa: B008
    ) -> WorktreeStatus:
        try:
            return await service.worktree_status(session_id)
        except AgentosError as exc:
            raise to_http_error(exc) from exc

    @router.post("/{session_id}/attach", response_model=AttachResult)
    async def attach_session_endpoint(
        session_id: UUID,
        body: AttachRequest,
        attachments: AttachmentCoordinator = Depends(get_attachments),  # noqa: B008
    ) -> AttachResult:
        try:
            return await attachments.attach(session_id, body.slot)
        except AgentosError as exc:
            raise to_http_error(exc) from exc

    return router
