"""API route factories."""

from __future__ import annotations

from agentos.web.routes.health import create_health_router
from agentos.web.routes.sessions import create_sessions_router
from agentos.web.routes.status import create_status_router

__all__ = [
    "create_health_router",
    "create_sessions_router",
    "create_status_router",
]
