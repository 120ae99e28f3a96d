from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from conductor.errors import SandboxError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Workspace:
    path: Path
    branch_ref: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": str(self.path), "branch_ref": self.branch_ref}


class Sandbox(ABC):
    """Per-task filesystem isolation. The orchestrator touches files only through this."""

    @abstractmethod
    def ensure_isolated_workspace(self, task_id: str) -> Workspace: ...

    @abstractmethod
    def commit(self, path: Path, message: str) -> str | None:
        """Commit pending changes; return the new revision, or None when nothing changed."""

    @abstractmethod
    def discard_changes(self, path: Path) -> None: ...

    @abstractmethod
    def merge_to_primary(self, task_id: str, path: Path) -> None: ...

    @abstractmethod
    def cleanup(self, task_id: str, path: Path) -> None: ...


class LocalSandbox(Sandbox):
    """Works directly in the repository root without isolation or version control."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def ensure_isolated_workspace(self, task_id: str) -> Workspace:
        return Workspace(path=self.repo_root, branch_ref="")

    def commit(self, path: Path, message: str) -> str | None:
        logger.info("Local sandbox: not committing %r in %s", message, path)
        return None

    def discard_changes(self, path: Path) -> None:
        logger.warning("Local sandbox cannot discard changes in %s", path)

    def merge_to_primary(self, task_id: str, path: Path) -> None:
        logger.info("Local sandbox: nothing to merge for %s", task_id)

    def cleanup(self, task_id: str, path: Path) -> None:
        logger.info("Local sandbox: nothing to clean up for %s", task_id)


class GitWorktreeSandbox(Sandbox):
    def __init__(
        self,
        repo_root: Path,
        *,
        worktree_root: str = ".worktrees",
        branch_prefix: str = "sandbox/",
        primary_branch: str = "main",
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.worktree_root = worktree_root
        self.branch_prefix = branch_prefix
        self.primary_branch = primary_branch

    def path_for(self, task_id: str) -> Path:
        return self.repo_root / self.worktree_root / task_id

    def branch_for(self, task_id: str) -> str:
        return f"{self.branch_prefix}{task_id}"

    def _run_git(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        operation: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=cwd or self.repo_root,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            raise SandboxError(f"git {' '.join(args)} failed: {exc}", operation=operation) from exc
        if check and proc.returncode != 0:
            raise SandboxError(
                proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed",
                operation=operation,
            )
        return proc

    def _branch_exists(self, branch: str) -> bool:
        proc = self._run_git(
            ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"],
            check=False,
            operation="ensure_isolated_workspace",
        )
        return proc.returncode == 0

    def ensure_isolated_workspace(self, task_id: str) -> Workspace:
        path = self.path_for(task_id)
        branch = self.branch_for(task_id)
        if (path / ".git").exists():
            return Workspace(path=path, branch_ref=branch)

        path.parent.mkdir(parents=True, exist_ok=True)
        if self._branch_exists(branch):
            args = ["worktree", "add", str(path), branch]
        else:
            args = ["worktree", "add", "-b", branch, str(path), "HEAD"]
        self._run_git(args, operation="ensure_isolated_workspace")
        logger.info("Created worktree %s on branch %s", path, branch)
        return Workspace(path=path, branch_ref=branch)

    def commit(self, path: Path, message: str) -> str | None:
        self._run_git(["add", "-A"], cwd=path, operation="commit")
        status = self._run_git(["status", "--porcelain"], cwd=path, operation="commit")
        if not status.stdout.strip():
            return None
        self._run_git(["commit", "-m", message], cwd=path, operation="commit")
        head = self._run_git(["rev-parse", "HEAD"], cwd=path, operation="commit")
        return head.stdout.strip()

    def discard_changes(self, path: Path) -> None:
        self._run_git(["reset", "--hard", "HEAD"], cwd=path, operation="discard_changes")
        self._run_git(["clean", "-fd"], cwd=path, operation="discard_changes")

    def merge_to_primary(self, task_id: str, path: Path) -> None:
        branch = self.branch_for(task_id)
        current = self._run_git(
            ["rev-parse", "--abbrev-ref", "HEAD"], operation="merge_to_primary"
        ).stdout.strip()
        if current != self.primary_branch:
            raise SandboxError(
                f"Primary checkout is on {current!r}, expected {self.primary_branch!r}.",
                operation="merge_to_primary",
            )
        diff = self._run_git(
            ["diff", "--stat", f"{self.primary_branch}...{branch}"],
            operation="merge_to_primary",
        )
        if not diff.stdout.strip():
            logger.info("No changes to merge from %s", branch)
            return
        self._run_git(
            ["merge", "--no-ff", branch, "-m", f"Merge {branch}: task {task_id} completed"],
            operation="merge_to_primary",
        )
        logger.info("Merged %s into %s", branch, self.primary_branch)

    def cleanup(self, task_id: str, path: Path) -> None:
        branch = self.branch_for(task_id)
        if path.exists():
            self._run_git(["worktree", "remove", "--force", str(path)], operation="cleanup")
        if self._branch_exists(branch):
            self._run_git(["branch", "-D", branch], operation="cleanup")
        logger.info("Cleaned up worktree and branch for %s", task_id)
