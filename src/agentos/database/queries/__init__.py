"""Database query functions for Agentos."""

from agentos.database.queries.session import (
    clear_isolation,
    compare_and_set_lifecycle,
    create_session,
    get_active_siblings_by_worktree,
    get_session,
    list_sessions,
    rename_session,
    reset_for_reboot,
    set_sandbox,
    set_worktree,
    soft_delete_session,
    update_setup_status,
)

__all__ = [
    "create_session",
    "get_session",
    "list_sessions",
    "get_active_siblings_by_worktree",
    "compare_and_set_lifecycle",
    "update_setup_status",
    "set_worktree",
    "set_sandbox",
    "clear_isolation",
    "rename_session",
    "reset_for_reboot",
    "soft_delete_session",
]
