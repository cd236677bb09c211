"""Database layer for Agentos.

The session store is a local relational database accessed through the
SQLAlchemy async engine (aiosqlite by default).

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    init_db: Create tables that do not exist yet.
    Base: SQLAlchemy declarative base for all models.
"""

from agentos.database.connection import get_engine, get_session_factory, init_db
from agentos.database.models import (
    Base,
    ContainerHealth,
    LifecycleStatus,
    SandboxStatus,
    Session,
    SetupStatus,
    TimestampMixin,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "init_db",
    "Base",
    "TimestampMixin",
    "Session",
    "LifecycleStatus",
    "SetupStatus",
    "SandboxStatus",
    "ContainerHealth",
]
