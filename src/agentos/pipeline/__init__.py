"""Resource backends for Agentos sessions.

This module implements git worktree management, sandbox containers and
native policy files, the security audit log, dependency bootstrap, and the
agent terminal process boundary.
"""

from __future__ import annotations

from agentos.pipeline.audit import SecurityAuditLog, SecurityEvent, SecurityEventType
from agentos.pipeline.container import (
    ContainerHealthResult,
    DockerSandboxManager,
    SandboxBackend,
    SandboxRequest,
)
from agentos.pipeline.env_setup import BootstrapResult, DependencyBootstrapper, SetupStep
from agentos.pipeline.git_ops import GitManager, WorktreeEntry
from agentos.pipeline.sandbox_policy import NativeSandboxManager, SandboxPolicy, build_policy
from agentos.pipeline.terminal import ProcessBackend, TmuxProcessBackend, build_agent_command
from agentos.pipeline.worktree import (
    GitWorktreeManager,
    WorktreeBackend,
    WorktreeDeletion,
    WorktreeInfo,
    slugify,
)

__all__ = [
    # Worktrees
    "GitManager",
    "GitWorktreeManager",
    "WorktreeBackend",
    "WorktreeDeletion",
    "WorktreeEntry",
    "WorktreeInfo",
    "slugify",
    # Sandbox
    "ContainerHealthResult",
    "DockerSandboxManager",
    "NativeSandboxManager",
    "SandboxBackend",
    "SandboxPolicy",
    "SandboxRequest",
    "build_policy",
    # Audit
    "SecurityAuditLog",
    "SecurityEvent",
    "SecurityEventType",
    # Setup
    "BootstrapResult",
    "DependencyBootstrapper",
    "SetupStep",
    # Terminal
    "ProcessBackend",
    "TmuxProcessBackend",
    "build_agent_command",
]
