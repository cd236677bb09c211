"""Git worktree management for isolated agent sessions.

Each isolated session gets its own worktree under a managed directory,
checked out on a fresh branch derived from the session's feature name.
Several sessions may share one worktree (a direct fork), so deletion is
decided by the caller from the store's sibling query; this module only
answers the git-side safety questions.

The orchestration core talks to the ``WorktreeBackend`` protocol.
``GitWorktreeManager`` is the GitPython implementation; every blocking git
call runs in a worker thread.

Example usage:
    >>> from agentos.config import WorktreeConfig
    >>> from agentos.pipeline.worktree import GitWorktreeManager
    >>>
    >>> manager = GitWorktreeManager(WorktreeConfig())
    >>> info = await manager.create_worktree(Path("/src/app"), "Login form", "main")
    >>> info.branch_name
    'feature/login-form'
    >>> await manager.branch_has_changes(info.path, info.base_branch)
    False
    >>> await manager.delete_worktree(info.path, delete_branch=True)
"""

from __future__ import annotations

import asyncio
import re
import shutil
from pathlib import Path
from typing import Protocol, runtime_checkable

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from pydantic import BaseModel, Field

from agentos.config import WorktreeConfig
from agentos.errors import WorktreeCreationError
from agentos.logging import get_logger
from agentos.pipeline.git_ops import GitManager, WorktreeEntry, is_git_repository

MAX_SLUG_LENGTH = 50
MAX_NAME_ATTEMPTS = 100


def slugify(text: str) -> str:
    """Lower-case, collapse non-alphanumerics to '-', trim, and cap length.

    Example:
        >>> slugify("  Fix: Login Form!! ")
        'fix-login-form'
    """
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:MAX_SLUG_LENGTH].rstrip("-")


class WorktreeInfo(BaseModel):
    """A session worktree.

    Attributes:
        path: Filesystem path to the worktree directory
        branch_name: Branch checked out in the worktree
        base_branch: Branch the worktree branch was created from
        source_path: Repository the worktree was created from
    """

    path: Path = Field(description="Worktree directory")
    branch_name: str = Field(description="Checked-out branch")
    base_branch: str = Field(description="Branch created from")
    source_path: Path = Field(description="Source repository")


class WorktreeDeletion(BaseModel):
    """Outcome of a worktree deletion."""

    removed: bool = Field(description="Worktree directory was removed")
    branch_deleted: bool = Field(default=False, description="Branch was deleted")
    error: str | None = Field(default=None, description="Non-fatal cleanup error")


@runtime_checkable
class WorktreeBackend(Protocol):
    """Narrow interface the orchestration core uses for working trees."""

    def is_managed_worktree(self, path: Path) -> bool: ...

    def branch_name_for(self, feature_name: str) -> str: ...

    async def is_repository(self, path: Path) -> bool: ...

    async def create_worktree(
        self,
        source_path: Path,
        feature_name: str,
        base_branch: str,
        project_name: str | None = None,
    ) -> WorktreeInfo: ...

    async def delete_worktree(
        self,
        path: Path,
        repo_common_dir: Path | None = None,
        delete_branch: bool = False,
    ) -> WorktreeDeletion: ...

    async def has_uncommitted_changes(self, path: Path) -> bool: ...

    async def branch_has_changes(self, path: Path, base_branch: str) -> bool: ...

    async def current_branch(self, path: Path) -> str: ...

    async def common_dir(self, path: Path) -> Path: ...

    async def init_submodules(self, path: Path) -> None: ...

    async def rename_branch(self, path: Path, old_name: str, new_name: str) -> None: ...


class GitWorktreeManager:
    """Manages session worktrees with GitPython.

    Attributes:
        config: Worktree configuration
        base_path: Managed directory holding every session worktree
        logger: Structured logger instance
    """

    def __init__(self, config: WorktreeConfig) -> None:
        """Initialize GitWorktreeManager.

        Args:
            config: Worktree configuration settings
        """
        self.config = config
        self.base_path = config.base_path.expanduser().resolve()
        self.logger = get_logger(__name__)
        self._create_lock = asyncio.Lock()

        self.logger.info(
            "worktree_manager_initialized",
            base_path=str(self.base_path),
            max_worktrees=config.max_worktrees,
        )

    def _manager(self, path: Path) -> GitManager:
        return GitManager(path, self.config)

    def is_managed_worktree(self, path: Path) -> bool:
        """True if ``path`` lives under the managed worktree directory."""
        try:
            Path(path).expanduser().resolve().relative_to(self.base_path)
            return True
        except ValueError:
            return False

    def branch_name_for(self, feature_name: str) -> str:
        """Undisambiguated branch name for a feature name."""
        return f"{self.config.branch_prefix}/{slugify(feature_name)}"

    def count_worktrees(self) -> int:
        """Number of worktree directories currently under the managed directory."""
        if not self.base_path.exists():
            return 0
        return sum(1 for p in self.base_path.iterdir() if p.is_dir())

    async def is_repository(self, path: Path) -> bool:
        return await asyncio.to_thread(is_git_repository, Path(path).expanduser())

    def _pick_names(
        self, git_manager: GitManager, feature_name: str, project_name: str
    ) -> tuple[str, Path]:
        """Choose a branch name and directory that are both unused."""
        slug = slugify(feature_name)
        if not slug:
            raise WorktreeCreationError(
                f"Feature name '{feature_name}' must contain at least one letter or digit"
            )
        project_slug = slugify(project_name) or "repo"

        for attempt in range(1, MAX_NAME_ATTEMPTS + 1):
            suffix = "" if attempt == 1 else f"-{attempt}"
            branch_name = f"{self.config.branch_prefix}/{slug}{suffix}"
            path = self.base_path / f"{project_slug}-{slug}{suffix}"
            if not git_manager.branch_exists(branch_name) and not path.exists():
                return branch_name, path

        raise WorktreeCreationError(
            f"Could not find a free branch name for '{feature_name}'"
        )

    def _create_sync(
        self,
        source_path: Path,
        feature_name: str,
        base_branch: str,
        project_name: str | None,
    ) -> WorktreeInfo:
        try:
            git_manager = self._manager(source_path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise WorktreeCreationError(
                f"Not a git repository: {source_path}",
                details={"source_path": str(source_path)},
            ) from e

        if not git_manager.branch_exists(base_branch):
            raise WorktreeCreationError(
                f"Base branch '{base_branch}' does not exist",
                details={"base_branch": base_branch},
            )

        if self.count_worktrees() >= self.config.max_worktrees:
            raise WorktreeCreationError(
                f"Maximum worktree limit ({self.config.max_worktrees}) reached. "
                "Delete some existing sessions to create new ones."
            )

        repo_root = git_manager.main_repo_path()
        branch_name, path = self._pick_names(
            git_manager, feature_name, project_name or repo_root.name
        )

        self.base_path.mkdir(parents=True, exist_ok=True)
        try:
            git_manager.add_worktree(path, branch_name, base_branch)
        except GitCommandError as e:
            raise WorktreeCreationError(
                f"Failed to create worktree: {e.stderr.strip() if e.stderr else e}",
                details={"path": str(path), "branch_name": branch_name},
            ) from e

        return WorktreeInfo(
            path=path,
            branch_name=branch_name,
            base_branch=base_branch,
            source_path=repo_root,
        )

    async def create_worktree(
        self,
        source_path: Path,
        feature_name: str,
        base_branch: str,
        project_name: str | None = None,
    ) -> WorktreeInfo:
        """Create a worktree on a new branch for a session.

        Args:
            source_path: Repository to branch from
            feature_name: Human feature name; slugged into the branch name
            base_branch: Existing branch to start from
            project_name: Directory name prefix (default: repository name)

        Returns:
            WorktreeInfo for the new worktree

        Raises:
            WorktreeCreationError: If the source is not a repository, the base
                branch is missing, the cap is reached, or git fails
        """
        source_path = Path(source_path).expanduser()
        # Name selection and creation must not interleave between sessions
        async with self._create_lock:
            try:
                info = await asyncio.to_thread(
                    self._create_sync, source_path, feature_name, base_branch, project_name
                )
            except WorktreeCreationError as e:
                self.logger.error(
                    "worktree_creation_failed",
                    source_path=str(source_path),
                    feature_name=feature_name,
                    base_branch=base_branch,
                    error=e.message,
                )
                raise

        self.logger.info(
            "worktree_created",
            path=str(info.path),
            branch_name=info.branch_name,
            base_branch=base_branch,
        )
        return info

    def _delete_sync(
        self, path: Path, repo_common_dir: Path | None, delete_branch: bool
    ) -> WorktreeDeletion:
        if not path.exists() and repo_common_dir is None:
            return WorktreeDeletion(removed=False)

        repo_root = repo_common_dir.parent if repo_common_dir else None
        branch_name: str | None = None
        if repo_root is None or delete_branch:
            try:
                worktree_git = self._manager(path)
                repo_root = repo_root or worktree_git.main_repo_path()
                branch_name = worktree_git.current_branch(path)
            except (InvalidGitRepositoryError, NoSuchPathError, GitCommandError):
                pass

        error: str | None = None
        main_git = self._manager(repo_root) if repo_root and repo_root.exists() else None

        if path.exists():
            try:
                if main_git is None:
                    raise GitCommandError("worktree", "main repository not found")
                main_git.remove_worktree(path)
            except GitCommandError as e:
                self.logger.warning(
                    "worktree_remove_fallback",
                    path=str(path),
                    error=str(e),
                )
                shutil.rmtree(path, ignore_errors=True)

        if main_git is not None:
            try:
                main_git.prune_worktrees()
            except GitCommandError as e:
                error = f"worktree prune failed: {e}"

        branch_deleted = False
        if delete_branch and branch_name and main_git is not None:
            try:
                branch_deleted = main_git.delete_branch(branch_name)
            except GitCommandError as e:
                error = f"branch delete failed: {e}"

        return WorktreeDeletion(
            removed=not path.exists(), branch_deleted=branch_deleted, error=error
        )

    async def delete_worktree(
        self,
        path: Path,
        repo_common_dir: Path | None = None,
        delete_branch: bool = False,
    ) -> WorktreeDeletion:
        """Remove a worktree and optionally its branch.

        Deleting an absent worktree is a no-op. The caller decides whether the
        branch may be deleted (no commits beyond its base).

        Args:
            path: Worktree directory
            repo_common_dir: Shared .git dir of the source repository, if known
            delete_branch: Also delete the worktree's branch

        Returns:
            WorktreeDeletion describing what was removed
        """
        path = Path(path).expanduser()
        result = await asyncio.to_thread(
            self._delete_sync, path, repo_common_dir, delete_branch
        )
        self.logger.info(
            "worktree_deleted",
            path=str(path),
            removed=result.removed,
            branch_deleted=result.branch_deleted,
            error=result.error,
        )
        return result

    async def has_uncommitted_changes(self, path: Path) -> bool:
        """Advisory check; assumes changes when git cannot answer."""
        try:
            return await asyncio.to_thread(
                lambda: self._manager(path).has_uncommitted_changes(path)
            )
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError) as e:
            self.logger.warning("uncommitted_check_failed", path=str(path), error=str(e))
            return True

    async def branch_has_changes(self, path: Path, base_branch: str) -> bool:
        """True if the worktree branch has commits beyond ``base_branch``.

        Errors count as "has changes" so a branch is never deleted on doubt.
        """
        try:
            ahead = await asyncio.to_thread(
                lambda: self._manager(path).commits_ahead(base_branch, cwd=path)
            )
            return ahead > 0
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError, ValueError) as e:
            self.logger.warning(
                "branch_changes_check_failed",
                path=str(path),
                base_branch=base_branch,
                error=str(e),
            )
            return True

    async def discard_uncommitted_changes(self, path: Path) -> None:
        await asyncio.to_thread(lambda: self._manager(path).discard_changes(path))

    async def list_worktrees(self, source_path: Path) -> list[WorktreeEntry]:
        return await asyncio.to_thread(lambda: self._manager(source_path).list_worktrees())

    async def current_branch(self, path: Path) -> str:
        return await asyncio.to_thread(lambda: self._manager(path).current_branch(path))

    async def common_dir(self, path: Path) -> Path:
        return await asyncio.to_thread(lambda: self._manager(path).common_dir())

    async def init_submodules(self, path: Path) -> None:
        """Initialize submodules recursively.

        Raises:
            GitCommandError: On failure or timeout (callers treat as non-fatal)
        """
        await asyncio.to_thread(lambda: self._manager(path).update_submodules(path))

    async def rename_branch(self, path: Path, old_name: str, new_name: str) -> None:
        await asyncio.to_thread(
            lambda: self._manager(path).rename_branch(old_name, new_name)
        )

