"""Health check endpoints for Agentos.

The readiness endpoint verifies database connectivity and reports how many
setup pipelines are running and how many status subscribers are connected.

Example:
    >>> from fastapi import FastAPI
    >>> from agentos.web.routes.health import create_health_router
    >>>
    >>> app = FastAPI()
    >>> app.include_router(create_health_router())
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text

from agentos.logging import get_logger
from agentos.web.routes.deps import get_session_factory

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    """Readiness check response model.

    Attributes:
        status: "ok" or "unhealthy"
        database: "connected" or "disconnected"
        setup_tasks: Setup pipelines currently running
        subscribers: Connected status stream subscribers
    """

    status: str
    database: str
    setup_tasks: int = 0
    subscribers: int = 0


def create_health_router() -> APIRouter:
    """Create health check router.

    Routes:
        GET /health/ - Liveness check
        GET /health/ready - Readiness check with database verification
    """
    router = APIRouter(prefix="/health", tags=["health"])

    @router.get("/", response_model=HealthResponse)
    async def health() -> dict[str, Any]:
        return {"status": "ok"}

    @router.get("/ready", response_model=ReadinessResponse)
    async def readiness(
        request: Request,
        session_factory: async_sessionmaker[AsyncSession] = Depends(  # noqa: B008
            get_session_factory
        ),
    ) -> dict[str, Any]:
        state = request.app.state
        counts = {
            "setup_tasks": state.supervisor.active_count,
            "subscribers": state.hub.subscriber_count,
        }
        try:
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:
            logger.warning("readiness_check_failed", database="disconnected", error=str(exc))
            return {"status": "unhealthy", "database": "disconnected", **counts}

        logger.debug("readiness_check_passed", database="connected")
        return {"status": "ok", "database": "connected", **counts}

    return router
