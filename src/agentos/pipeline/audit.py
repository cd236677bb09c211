"""Security event log for sandbox operations.

Every container create, destroy, health probe, and firewall initialisation
attempt is recorded as a structured event, successful or not. Events go to
the structlog ``agentos.security`` logger and, when configured, are appended
as JSON lines to a dedicated audit file.

Example usage:
    >>> audit = SecurityAuditLog(Path("/var/log/agentos/security.jsonl"))
    >>> audit.record(
    ...     SecurityEventType.CONTAINER_CREATED,
    ...     session_id="4f1c...",
    ...     container_id="a1b2c3",
    ...     success=True,
    ... )
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from agentos.logging import get_logger


class SecurityEventType(str, Enum):
    """Kinds of security-relevant sandbox events."""

    CONTAINER_CREATED = "container_created"
    CONTAINER_DESTROYED = "container_destroyed"
    CONTAINER_HEALTH_CHECK = "container_health_check"
    CONTAINER_ACCESS_DENIED = "container_access_denied"
    FIREWALL_INIT = "firewall_init"
    POLICY_WRITTEN = "policy_written"


class SecurityEvent(BaseModel):
    """One append-only audit record."""

    type: SecurityEventType = Field(description="Event kind")
    session_id: str = Field(description="Session the event belongs to")
    container_id: str | None = Field(default=None, description="Container involved")
    success: bool = Field(description="Whether the operation succeeded")
    error: str | None = Field(default=None, description="Failure reason")
    details: dict[str, Any] = Field(default_factory=dict, description="Extra context")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SecurityAuditLog:
    """Writes security events to structlog and an optional JSONL file.

    Attributes:
        path: Optional audit file path
        events: In-memory copy of recorded events (most recent last)
    """

    def __init__(self, path: Path | None = None, keep: int = 1000) -> None:
        self.path = path.expanduser() if path else None
        self.keep = keep
        self.events: list[SecurityEvent] = []
        self.logger = get_logger("agentos.security")
        # record() is called from worker threads and the event loop
        self._lock = threading.Lock()

        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def record(
        self,
        event_type: SecurityEventType,
        session_id: str,
        success: bool,
        container_id: str | None = None,
        error: str | None = None,
        **details: Any,
    ) -> SecurityEvent:
        """Record a security event.

        A failure to write the audit file is logged and does not raise.
        """
        event = SecurityEvent(
            type=event_type,
            session_id=session_id,
            container_id=container_id,
            success=success,
            error=error,
            details=details,
        )

        log = self.logger.info if success else self.logger.warning
        log(
            "security_event",
            security_event_type=event_type.value,
            session_id=session_id,
            container_id=container_id,
            success=success,
            error=error,
            **details,
        )

        with self._lock:
            self.events.append(event)
            if len(self.events) > self.keep:
                del self.events[: len(self.events) - self.keep]

            if self.path is not None:
                try:
                    with open(self.path, "a", encoding="utf-8") as f:
                        f.write(event.model_dump_json() + "\n")
                except OSError as e:
                    self.logger.error(
                        "security_audit_write_failed",
                        path=str(self.path),
                        error=str(e),
                    )

        return event
