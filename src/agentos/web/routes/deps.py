"""Dependencies that pull shared services out of app.state."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

from agentos.errors import AgentosError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from agentos.orchestrator.attachment import AttachmentCoordinator
    from agentos.orchestrator.session_service import SessionService
    from agentos.orchestrator.status_hub import StatusHub


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory  # type: ignore[no-any-return]


def get_service(request: Request) -> SessionService:
    return request.app.state.service  # type: ignore[no-any-return]


def get_hub(request: Request) -> StatusHub:
    return request.app.state.hub  # type: ignore[no-any-return]


def get_attachments(request: Request) -> AttachmentCoordinator:
    return request.app.state.attachments  # type: ignore[no-any-return]


def to_http_error(exc: AgentosError) -> HTTPException:
    """Map a domain error to an HTTPException carrying its payload."""
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())
