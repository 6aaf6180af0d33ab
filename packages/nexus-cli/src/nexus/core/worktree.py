"""Git worktree management.

Each workspace gets its own ``git worktree`` under
``<project>/.nexus/worktrees/<name>``, checked out to a branch named after
the workspace.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import List, Optional

from ..errors import InvalidWorkspaceNameError, WorktreeError
from .process import ProcessResult, Runner, run_process
from .project import worktrees_dir

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 120.0
DEFAULT_BRANCHES = ("main", "master")


def validate_workspace_name(name: str) -> str:
    """Reject names that could escape the worktrees directory."""
    if not name or not name.strip():
        raise InvalidWorkspaceNameError("workspace name cannot be empty", operation="validate")
    if "/" in name or "\\" in name:
        raise InvalidWorkspaceNameError(
            "workspace name cannot contain path separators", operation="validate", identity=name
        )
    if ".." in name or name.startswith(".") or name.startswith("-"):
        raise InvalidWorkspaceNameError(
            "workspace name cannot start with '.' or '-' or contain '..'",
            operation="validate",
            identity=name,
        )
    if name != name.strip() or any(c.isspace() for c in name):
        raise InvalidWorkspaceNameError(
            "workspace name cannot contain whitespace", operation="validate", identity=name
        )
    return name


class WorktreeManager:
    """Creates and removes per-workspace git worktrees."""

    def __init__(
        self,
        repo_root: Path,
        root: Optional[Path] = None,
        runner: Optional[Runner] = None,
    ):
        self.repo_root = Path(repo_root).resolve()
        self.root = Path(root) if root else worktrees_dir(self.repo_root)
        self._runner: Runner = runner or run_process

    def path_for(self, name: str) -> Path:
        return self.root / validate_workspace_name(name)

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_dir()

    def list(self) -> List[str]:
        """Workspace names that have a worktree directory on disk."""
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    def add(self, name: str) -> Path:
        """Create the worktree for ``name`` and return its path.

        When the main checkout is itself on branch ``name`` it is switched
        to the default branch first, since git will not check out one
        branch twice. Uncommitted changes there are stashed beforehand and
        re-applied inside the new worktree; if that fails they stay in
        ``git stash list``.
        """
        path = self.path_for(name)
        if path.exists():
            logger.info(f"Worktree for {name} already exists at {path}")
            return path

        stashed = False
        if self._current_branch() == name:
            stashed = self._stash_changes(name)
            default = self._default_branch(exclude=name)
            self._git(["checkout", default], name)
            logger.info(f"Switched main checkout from {name} to {default}")

        path.parent.mkdir(parents=True, exist_ok=True)
        if self._branch_exists(name):
            self._git(["worktree", "add", str(path), name], name)
        else:
            self._git(["worktree", "add", "-b", name, str(path)], name)
        logger.info(f"Created worktree {path} on branch {name}")

        if stashed:
            result = self._git(["stash", "pop"], name, cwd=path, check=False)
            if result.ok:
                logger.info(f"Moved uncommitted changes of {name} into its worktree")
            else:
                logger.warning(
                    f"Could not re-apply stashed changes for {name}; they remain in 'git stash list': "
                    f"{result.output}"
                )
        return path

    def remove(self, name: str) -> None:
        """Remove the worktree directory and its git registration.

        Removing an absent worktree only prunes stale registrations. A
        locked worktree makes this fail.
        """
        path = self.path_for(name)
        if not path.exists():
            self._git(["worktree", "prune"], name, check=False)
            logger.debug(f"Worktree for {name} already removed")
            return

        # --force: the generated .env is untracked; locks still refuse
        self._git(["worktree", "remove", "--force", str(path)], name)
        if path.exists():
            shutil.rmtree(path)
        self._git(["worktree", "prune"], name, check=False)
        logger.info(f"Removed worktree {path}")

    def _current_branch(self) -> str:
        result = self._git(["rev-parse", "--abbrev-ref", "HEAD"], None, check=False)
        return result.stdout.strip() if result.ok else ""

    def _branch_exists(self, branch: str) -> bool:
        result = self._git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], branch, check=False)
        return result.ok

    def _default_branch(self, exclude: str) -> str:
        for candidate in DEFAULT_BRANCHES:
            if candidate != exclude and self._branch_exists(candidate):
                return candidate
        raise WorktreeError(
            f"main checkout is on branch {exclude} and no {'/'.join(DEFAULT_BRANCHES)} branch to switch to",
            operation="worktree add",
            identity=exclude,
        )

    def _stash_changes(self, name: str) -> bool:
        status = self._git(["status", "--porcelain", "--untracked-files=no"], name)
        if not status.stdout.strip():
            return False
        self._git(["stash", "push", "-m", f"nexus: moved to worktree {name}"], name)
        logger.info(f"Stashed uncommitted changes on {name} before creating its worktree")
        return True

    def _git(
        self,
        args: List[str],
        name: Optional[str],
        cwd: Optional[Path] = None,
        check: bool = True,
    ) -> ProcessResult:
        return self._runner(
            ["git", *args],
            cwd=cwd or self.repo_root,
            timeout=GIT_TIMEOUT,
            check=check,
            operation=f"git {args[0]}",
            identity=name,
            error_cls=WorktreeError,
        )


__all__ = ["WorktreeManager", "validate_workspace_name"]
