"""HTTP surface for Agentos: FastAPI app, middleware, and routes."""

from __future__ import annotations

from agentos.web.app import create_app

__all__ = ["create_app"]
