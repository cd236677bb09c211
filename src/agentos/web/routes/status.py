"""Live session status endpoints.

``GET /status/stream`` is a Server-Sent Events stream. The first event is
``init`` with every known snapshot; ``status`` events carry partial updates
for one session; ``heartbeat`` events keep idle connections open.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from agentos.logging import get_logger
from agentos.orchestrator.status_hub import StatusData
from agentos.web.routes.deps import get_hub

if TYPE_CHECKING:
    from agentos.orchestrator.status_hub import StatusHub

logger = get_logger(__name__)


def create_status_router() -> APIRouter:
    """Create the status router.

    Routes:
        GET /status/ - Current snapshot of every session
        GET /status/stream - SSE stream of status changes
    """
    router = APIRouter(prefix="/status", tags=["status"])

    @router.get("/", response_model=dict[str, StatusData])
    async def all_statuses(
        hub: StatusHub = Depends(get_hub),  # noqa: B008
    ) -> dict[str, StatusData]:
        return hub.get_all_statuses()

    @router.get("/stream")
    async def stream_statuses(
        request: Request,
        hub: StatusHub = Depends(get_hub),  # noqa: B008
    ) -> EventSourceResponse:
        async def event_generator() -> AsyncIterator[dict[str, Any]]:
            async for event in hub.stream():
                if await request.is_disconnected():
                    break
                yield event.to_sse()

        return EventSourceResponse(event_generator())

    return router
