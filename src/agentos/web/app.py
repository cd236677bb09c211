"""FastAPI application factory for Agentos.

This module creates and configures the FastAPI application with:
- CORS middleware for the local UI
- Request logging middleware with correlation IDs
- A lifespan that wires the database, resource backends, status hub,
  session service, and attachment coordinator, then runs startup recovery
- Session, status stream, and health routes

Example usage:
    >>> from agentos.config import AgentosConfig
    >>> from agentos.web.app import create_app
    >>>
    >>> app = create_app(AgentosConfig())
    >>>
    >>> import uvicorn
    >>> uvicorn.run(app, host="127.0.0.1", port=3011)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentos import __version__
from agentos.config import AgentosConfig
from agentos.database.connection import get_engine, get_session_factory, init_db
from agentos.logging import get_logger
from agentos.orchestrator.attachment import AttachmentCoordinator
from agentos.orchestrator.recovery import SessionRecovery
from agentos.orchestrator.session_service import SessionService
from agentos.orchestrator.setup_pipeline import SetupPipeline
from agentos.orchestrator.status_hub import StatusHub
from agentos.orchestrator.supervisor import BackgroundTaskSupervisor
from agentos.pipeline.audit import SecurityAuditLog
from agentos.pipeline.container import DockerSandboxManager, SandboxBackend
from agentos.pipeline.env_setup import DependencyBootstrapper
from agentos.pipeline.sandbox_policy import NativeSandboxManager
from agentos.pipeline.terminal import TmuxProcessBackend
from agentos.pipeline.worktree import GitWorktreeManager
from agentos.web.middleware import RequestLoggingMiddleware
from agentos.web.routes.health import create_health_router
from agentos.web.routes.sessions import create_sessions_router
from agentos.web.routes.status import create_status_router

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)

APP_VERSION = __version__


def build_sandbox(config: AgentosConfig, audit: SecurityAuditLog) -> SandboxBackend:
    """Pick the sandbox backend for ``config.sandbox.mode``."""
    if config.sandbox.mode == "native":
        return NativeSandboxManager(audit)
    return DockerSandboxManager(config.sandbox, audit)


def build_service(
    config: AgentosConfig,
    session_factory: async_sessionmaker[AsyncSession],
) -> SessionService:
    """Wire the production backends into a SessionService."""
    audit = SecurityAuditLog(config.sandbox.audit_log_file)
    hub = StatusHub(config.status)
    pipeline = SetupPipeline(
        session_factory,
        worktrees=GitWorktreeManager(config.worktree),
        sandbox=build_sandbox(config, audit),
        processes=TmuxProcessBackend(config.terminal),
        bootstrapper=DependencyBootstrapper(config.setup),
        hub=hub,
    )
    return SessionService(session_factory, pipeline, BackgroundTaskSupervisor(), hub)


def _attach_service(app: FastAPI, service: SessionService) -> None:
    config: AgentosConfig = app.state.config
    app.state.service = service
    app.state.session_factory = service.session_factory
    app.state.hub = service.hub
    app.state.supervisor = service.supervisor
    app.state.attachments = AttachmentCoordinator(
        service.session_factory, service.processes, config.terminal
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle.

    On startup the database is opened (tables created if missing), the
    service graph is built unless one was injected, recovery reconciles the
    store with running resources, the hub is seeded from the store, and the
    heartbeat starts. On shutdown supervised setup tasks are cancelled, the
    hub closes its subscribers, and the engine is disposed.

    Args:
        app: FastAPI application instance

    Yields:
        None after startup, cleans up on context exit
    """
    config: AgentosConfig = app.state.config
    logger.info("app_startup_begin", host=config.web.host, port=config.web.port)

    engine = None
    if getattr(app.state, "service", None) is None:
        engine = get_engine(config.database)
        await init_db(engine)
        _attach_service(app, build_service(config, get_session_factory(engine)))
        app.state.engine = engine
        logger.info("database_initialized", url=engine.url.render_as_string())

    service: SessionService = app.state.service
    stats = await SessionRecovery(service).recover()
    await service.hub.sync_from_database(service.session_factory)
    await service.hub.start()
    logger.info("app_startup_complete", **stats.model_dump())

    yield

    logger.info("app_shutdown_begin")
    cancelled = await service.supervisor.cancel_all()
    await service.hub.shutdown()
    if engine is not None:
        await engine.dispose()
    logger.info("app_shutdown_complete", cancelled_setup_tasks=cancelled)


def create_app(
    config: AgentosConfig | None = None,
    service: SessionService | None = None,
) -> FastAPI:
    """Create and configure a FastAPI application.

    Args:
        config: Optional AgentosConfig. If None, creates default config.
        service: Pre-built service graph. When given, the lifespan reuses it
            instead of opening the configured database and backends.

    Returns:
        Configured FastAPI application instance.

    Example:
        >>> from agentos.config import AgentosConfig, WebConfig
        >>>
        >>> app = create_app()
        >>>
        >>> config = AgentosConfig(web=WebConfig(cors_origins=["http://localhost:5173"]))
        >>> app = create_app(config)
    """
    if config is None:
        config = AgentosConfig()

    app = FastAPI(
        title="Agentos",
        version=APP_VERSION,
        description="Session orchestration for AI coding agents",
        lifespan=lifespan,
    )
    app.state.config = config
    if service is not None:
        _attach_service(app, service)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.web.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(create_health_router())
    app.include_router(create_sessions_router())
    app.include_router(create_status_router())

    logger.info("app_created", cors_origins=config.web.cors_origins, version=APP_VERSION)
    return app
