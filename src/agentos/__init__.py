"""Agentos - Session orchestration for AI coding agents.

This package provisions and supervises isolated agent sessions: git
worktrees, sandboxed containers, terminal processes, and a live status
stream for every observer.
"""

__version__ = "0.1.0"
