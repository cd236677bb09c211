"""Git operations wrapper for Agentos.

This module provides a high-level interface to the git operations session
provisioning needs, using GitPython with structured logging. Every git
invocation carries ``kill_after_timeout``.

Example usage:
    >>> from pathlib import Path
    >>> from agentos.config import WorktreeConfig
    >>> from agentos.pipeline.git_ops import GitManager
    >>>
    >>> git_manager = GitManager(repo_path=Path("/src/app"), config=WorktreeConfig())
    >>> git_manager.branch_exists("feature/login")
    False
    >>> git_manager.add_worktree(Path("/wt/app-login"), "feature/login", "main")
    >>> git_manager.commits_ahead("main", cwd=Path("/wt/app-login"))
    0
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import git
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from agentos.config import WorktreeConfig
from agentos.logging import get_logger

PROTECTED_BRANCHES = frozenset({"main", "master"})


@dataclass
class WorktreeEntry:
    """One entry of ``git worktree list --porcelain``.

    Attributes:
        path: Worktree directory
        head: Checked-out commit SHA
        branch: Short branch name (None when detached)
        bare: Whether this is the bare main entry
    """

    path: str
    head: str | None = None
    branch: str | None = None
    bare: bool = False
    flags: list[str] = field(default_factory=list)


def is_git_repository(path: Path) -> bool:
    """Return True if ``path`` is inside a git working tree."""
    try:
        git.Repo(path, search_parent_directories=True)
        return True
    except (InvalidGitRepositoryError, NoSuchPathError):
        return False


class GitManager:
    """High-level git operations manager using GitPython.

    Attributes:
        repo_path: Path to the git repository (or one of its worktrees)
        config: Worktree configuration
        repo: GitPython Repo object
        logger: Structured logger instance
    """

    def __init__(self, repo_path: Path, config: WorktreeConfig) -> None:
        """Initialize GitManager with repository and configuration.

        Args:
            repo_path: Path to the git repository root
            config: Worktree configuration settings

        Raises:
            InvalidGitRepositoryError: If repo_path is not a valid git repository
            NoSuchPathError: If repo_path does not exist
        """
        self.repo_path = repo_path
        self.config = config
        self.logger = get_logger(__name__)

        try:
            self.repo = git.Repo(repo_path, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            self.logger.error(
                "git_manager_init_failed",
                repo_path=str(repo_path),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

    @property
    def timeout(self) -> int:
        return self.config.git_timeout_seconds

    def _git(self, cwd: Path | None = None) -> git.Git:
        return git.Git(str(cwd)) if cwd is not None else self.repo.git

    def branch_exists(self, branch_name: str) -> bool:
        """Check whether a local branch exists."""
        return branch_name in [h.name for h in self.repo.heads]

    def current_branch(self, cwd: Path | None = None) -> str:
        """Return the branch checked out at ``cwd`` (default: repo root)."""
        out = self._git(cwd).rev_parse("--abbrev-ref", "HEAD", kill_after_timeout=self.timeout)
        return out.strip()

    def common_dir(self) -> Path:
        """Absolute path of the repository's shared .git directory."""
        out = self.repo.git.rev_parse(
            "--path-format=absolute", "--git-common-dir", kill_after_timeout=self.timeout
        )
        return Path(out.strip())

    def main_repo_path(self) -> Path:
        """Main working tree path (parent of the common .git dir)."""
        return self.common_dir().parent

    def has_uncommitted_changes(self, cwd: Path | None = None) -> bool:
        """True if ``git status --porcelain`` reports anything."""
        out = self._git(cwd).status("--porcelain", kill_after_timeout=self.timeout)
        return bool(out.strip())

    def commits_ahead(self, base_branch: str, cwd: Path | None = None) -> int:
        """Number of commits on HEAD not reachable from ``base_branch``."""
        out = self._git(cwd).rev_list(
            "--count", f"{base_branch}..HEAD", kill_after_timeout=self.timeout
        )
        return int(out.strip() or 0)

    def discard_changes(self, cwd: Path | None = None) -> None:
        """Reset tracked files and remove untracked files."""
        g = self._git(cwd)
        g.reset("--hard", "HEAD", kill_after_timeout=self.timeout)
        g.clean("-fd", kill_after_timeout=self.timeout)
        self.logger.info("uncommitted_changes_discarded", cwd=str(cwd or self.repo_path))

    def add_worktree(self, path: Path, branch_name: str, base_branch: str) -> None:
        """Create a worktree on a new branch from ``base_branch``.

        Tries the fully-qualified ``refs/heads/<base>`` first so that a tag or
        remote ref with the same name cannot shadow the local branch.

        Raises:
            GitCommandError: If both attempts fail
        """
        try:
            self.repo.git.worktree(
                "add", "-b", branch_name, str(path), f"refs/heads/{base_branch}",
                kill_after_timeout=self.timeout,
            )
        except GitCommandError:
            self.logger.debug(
                "worktree_add_retry_bare_ref",
                branch_name=branch_name,
                base_branch=base_branch,
            )
            self.repo.git.worktree(
                "add", "-b", branch_name, str(path), base_branch,
                kill_after_timeout=self.timeout,
            )

    def remove_worktree(self, path: Path) -> None:
        """``git worktree remove --force``."""
        self.repo.git.worktree(
            "remove", "--force", str(path), kill_after_timeout=self.timeout
        )

    def prune_worktrees(self) -> None:
        """Drop administrative entries of worktrees whose directory is gone."""
        self.repo.git.worktree("prune", kill_after_timeout=self.timeout)

    def list_worktrees(self) -> list[WorktreeEntry]:
        """Parse ``git worktree list --porcelain``."""
        out = self.repo.git.worktree("list", "--porcelain", kill_after_timeout=self.timeout)
        entries: list[WorktreeEntry] = []
        current: WorktreeEntry | None = None

        for line in out.splitlines():
            if line.startswith("worktree "):
                current = WorktreeEntry(path=line[len("worktree "):])
                entries.append(current)
            elif current is None:
                continue
            elif line.startswith("HEAD "):
                current.head = line[len("HEAD "):]
            elif line.startswith("branch "):
                current.branch = line[len("branch "):].removeprefix("refs/heads/")
            elif line == "bare":
                current.bare = True
            elif line:
                current.flags.append(line)

        return entries

    def delete_branch(self, branch_name: str) -> bool:
        """Force-delete a local branch.

        Protected branches (main, master) are never deleted.

        Returns:
            True if the branch was deleted
        """
        if branch_name in PROTECTED_BRANCHES:
            self.logger.warning("protected_branch_not_deleted", branch_name=branch_name)
            return False
        if not self.branch_exists(branch_name):
            return False

        self.repo.git.branch("-D", branch_name, kill_after_timeout=self.timeout)
        self.logger.info("branch_deleted", branch_name=branch_name)
        return True

    def rename_branch(self, old_name: str, new_name: str) -> None:
        """Rename a local branch.

        Raises:
            GitCommandError: If the target name already exists
        """
        if self.branch_exists(new_name):
            raise GitCommandError("branch", f"Branch '{new_name}' already exists")
        self.repo.git.branch("-m", old_name, new_name, kill_after_timeout=self.timeout)
        self.logger.info("branch_renamed", old_name=old_name, new_name=new_name)

    def update_submodules(self, cwd: Path) -> None:
        """``git submodule update --init --recursive`` inside ``cwd``."""
        self._git(cwd).submodule(
            "update", "--init", "--recursive",
            kill_after_timeout=self.config.submodule_timeout_seconds,
        )
