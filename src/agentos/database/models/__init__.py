"""SQLAlchemy ORM models for Agentos.

All models use SQLAlchemy 2.0 declarative style with Mapped[] type annotations.
"""

from agentos.database.models.base import Base, TimestampMixin
from agentos.database.models.session import (
    ContainerHealth,
    LifecycleStatus,
    SandboxStatus,
    Session,
    SetupStatus,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "Session",
    "LifecycleStatus",
    "SetupStatus",
    "SandboxStatus",
    "ContainerHealth",
]
