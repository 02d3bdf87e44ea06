"""Git worktree collaborator: creates workspaces and probes which still exist."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Iterable

from .errors import WorktreeError
from .state import Workspace

logger = logging.getLogger(__name__)


def sanitize_branch_name(branch: str) -> str:
    return branch.replace("/", "-")


def detect_repo_root(start: Path | None = None) -> Path | None:
    current = (start or Path.cwd()).resolve()
    while True:
        if (current / ".git").exists():
            return current
        if current.parent == current:
            return None
        current = current.parent


def live_paths(workspaces: Iterable[Workspace]) -> set[Path]:
    """Ground truth for the reconciler: stored paths that are still directories."""
    return {workspace.path for workspace in workspaces if workspace.path.is_dir()}


class WorktreeManager:
    """Create git worktrees next to the repository as ``<repo>-<name>``."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = Path(repo_root).resolve()
        if not (self.repo_root / ".git").exists():
            raise WorktreeError(f"{self.repo_root} is not a git repository")

    @property
    def repo_name(self) -> str:
        return self.repo_root.name

    def path_for(self, name: str) -> Path:
        return self.repo_root.parent / f"{self.repo_name}-{sanitize_branch_name(name)}"

    def create(self, name: str) -> Workspace:
        name = name.strip()
        if not name:
            raise WorktreeError("workspace name must not be empty")
        target_path = self.path_for(name)
        if target_path.exists():
            raise WorktreeError(f"{target_path} already exists")

        if self._branch_exists(name):
            self._run_git(["worktree", "add", str(target_path), name])
        else:
            self._run_git(["worktree", "add", str(target_path), "-b", name])
        logger.info("Created worktree %s on branch %s", target_path, name)
        return Workspace(
            name=sanitize_branch_name(name),
            repo_name=self.repo_name,
            path=target_path,
            branch=name,
        )

    # ------------------------------------------------------------------
    def _branch_exists(self, branch: str) -> bool:
        try:
            self._run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"])
        except WorktreeError:
            return False
        return True

    def _run_git(self, args: list[str]) -> str:
        cmd = ["git", *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=self.repo_root,
                check=True,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise WorktreeError("git is not installed") from exc
        except subprocess.CalledProcessError as exc:
            raise WorktreeError(f"git {' '.join(args)} failed: {exc.stderr.strip()}") from exc
        return result.stdout
