"""Orchestration core for Agentos.

This module implements the session lifecycle and setup state machines, the
setup pipeline with rollback, supervised background tasks, the session
service entry points, startup recovery, the status broadcast hub, and the
attachment coordinator.
"""

from __future__ import annotations

from agentos.orchestrator.attachment import AttachmentCoordinator, AttachResult
from agentos.orchestrator.recovery import RecoveryStats, SessionRecovery
from agentos.orchestrator.session_service import (
    DeleteResult,
    SessionCreate,
    SessionFork,
    SessionService,
    WorktreeStatus,
)
from agentos.orchestrator.setup_pipeline import SetupPipeline, SetupRequest
from agentos.orchestrator.state_machine import (
    LIFECYCLE_TRANSITIONS,
    SETUP_DISPLAY_MESSAGES,
    SETUP_TRANSITIONS,
    InvalidTransitionError,
    LifecycleStateMachine,
    validate_setup_transition,
    validate_transition,
)
from agentos.orchestrator.status_hub import (
    StatusData,
    StatusEvent,
    StatusEventKind,
    StatusHub,
    get_status_hub,
)
from agentos.orchestrator.supervisor import BackgroundTaskSupervisor

__all__ = [
    # State machines
    "LIFECYCLE_TRANSITIONS",
    "SETUP_DISPLAY_MESSAGES",
    "SETUP_TRANSITIONS",
    "InvalidTransitionError",
    "LifecycleStateMachine",
    "validate_setup_transition",
    "validate_transition",
    # Status hub
    "StatusData",
    "StatusEvent",
    "StatusEventKind",
    "StatusHub",
    "get_status_hub",
    # Pipeline
    "BackgroundTaskSupervisor",
    "SetupPipeline",
    "SetupRequest",
    # Service
    "DeleteResult",
    "SessionCreate",
    "SessionFork",
    "SessionService",
    "WorktreeStatus",
    # Recovery
    "RecoveryStats",
    "SessionRecovery",
    # Attachment
    "AttachResult",
    "AttachmentCoordinator",
]
