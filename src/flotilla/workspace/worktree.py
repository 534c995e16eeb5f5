"""One git worktree and branch per task.

Paths and branch names derive only from the task id
(``<worktrees>/<taskId>`` on ``<prefix><taskId>``), so a task always maps to
the same location. ``create`` refuses to touch an existing path; that check is
not atomic, so two processes creating the same task at once can still race.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flotilla.errors import GitError
from flotilla.workspace.git import run_git, try_git

log = logging.getLogger(__name__)


@dataclass(slots=True)
class WorktreeResult:
    success: bool
    task_id: str
    path: Path | None = None
    branch: str | None = None
    base_branch: str | None = None
    branch_deleted: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success, "taskId": self.task_id}
        if self.path is not None:
            data["path"] = str(self.path)
        if self.branch:
            data["branch"] = self.branch
        if self.base_branch:
            data["baseBranch"] = self.base_branch
        if self.error:
            data["error"] = self.error
        return data


@dataclass(slots=True)
class WorktreeInfo:
    path: Path
    head: str = ""
    branch: str | None = None  # short name, None when detached
    bare: bool = False
    detached: bool = False
    locked: bool = False
    prunable: bool = False
    task_id: str | None = None


@dataclass(slots=True)
class WorktreeStatus:
    task_id: str
    path: Path
    exists: bool
    branch: str | None = None
    clean: bool | None = None
    changed_files: list[str] = field(default_factory=list)
    ahead: int | None = None
    behind: int | None = None
    compared_to: str | None = None


class WorktreeManager:
    def __init__(
        self,
        project_root: Path,
        worktrees_dir: Path,
        *,
        main_branch: str = "main",
        branch_prefix: str = "task/",
    ) -> None:
        self.project_root = Path(project_root)
        self.worktrees_dir = Path(worktrees_dir)
        self.main_branch = main_branch
        self.branch_prefix = branch_prefix
        self._task_ref = re.compile(rf"^refs/heads/{re.escape(branch_prefix)}(T\d+)$")

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def worktree_path(self, task_id: str) -> Path:
        return self.worktrees_dir / task_id

    def branch_name(self, task_id: str) -> str:
        return f"{self.branch_prefix}{task_id}"

    def exists(self, task_id: str) -> bool:
        return self.worktree_path(task_id).exists()

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def current_branch(self) -> str:
        return run_git(["rev-parse", "--abbrev-ref", "HEAD"], self.project_root).strip()

    def branch_exists(self, branch: str) -> bool:
        return try_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], self.project_root) is not None

    def ensure_branch(self, branch: str, base: str | None = None) -> bool:
        """Create ``branch`` from ``base`` unless it exists; True when created."""
        if self.branch_exists(branch):
            return False
        run_git(["branch", branch, base or self.main_branch], self.project_root)
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, task_id: str, base_branch: str | None = None) -> WorktreeResult:
        path = self.worktree_path(task_id)
        branch = self.branch_name(task_id)
        if path.exists():
            return WorktreeResult(False, task_id, path=path, branch=branch, error=f"Worktree already exists: {path}")
        try:
            base = base_branch or self.current_branch()
            path.parent.mkdir(parents=True, exist_ok=True)
            run_git(["worktree", "add", str(path), "-b", branch, base], self.project_root)
        except GitError as exc:
            return WorktreeResult(False, task_id, path=path, branch=branch, error=str(exc))
        log.info("Created worktree %s on %s from %s", path, branch, base)
        return WorktreeResult(True, task_id, path=path, branch=branch, base_branch=base)

    def remove(self, task_id: str, *, force: bool = False, keep_branch: bool = False) -> WorktreeResult:
        path = self.worktree_path(task_id)
        branch = self.branch_name(task_id)
        args = ["worktree", "remove", str(path)]
        if force:
            args.append("--force")
        try:
            run_git(args, self.project_root)
        except GitError as exc:
            return WorktreeResult(False, task_id, path=path, branch=branch, error=str(exc))

        deleted = False
        if not keep_branch:
            try:
                run_git(["branch", "-D" if force else "-d", branch], self.project_root)
                deleted = True
            except GitError as exc:
                log.warning("Kept branch %s: %s", branch, exc.stderr.strip())
        return WorktreeResult(True, task_id, path=path, branch=branch, branch_deleted=deleted)

    def prune(self) -> None:
        run_git(["worktree", "prune"], self.project_root)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def list(self) -> list[WorktreeInfo]:
        output = run_git(["worktree", "list", "--porcelain"], self.project_root)
        return self.parse_porcelain(output)

    def parse_porcelain(self, output: str) -> list[WorktreeInfo]:
        infos: list[WorktreeInfo] = []
        current: WorktreeInfo | None = None
        for line in output.splitlines():
            if not line.strip():
                current = None
                continue
            key, _, value = line.partition(" ")
            if key == "worktree":
                current = WorktreeInfo(path=Path(value))
                infos.append(current)
            elif current is None:
                continue
            elif key == "HEAD":
                current.head = value
            elif key == "branch":
                match = self._task_ref.match(value)
                current.task_id = match.group(1) if match else None
                current.branch = value.removeprefix("refs/heads/")
            elif key == "bare":
                current.bare = True
            elif key == "detached":
                current.detached = True
            elif key == "locked":
                current.locked = True
            elif key == "prunable":
                current.prunable = True
        return infos

    def list_agent_worktrees(self) -> list[WorktreeInfo]:
        return [info for info in self.list() if info.task_id]

    def changed_files(self, task_id: str) -> list[str]:
        """Uncommitted changes in the task's worktree, untracked files included."""
        output = run_git(["status", "--porcelain", "-z", "--untracked-files=all"], self.worktree_path(task_id))
        return parse_status_z(output)

    def divergence(self, task_id: str, upstream: str | None = None) -> tuple[int, int] | None:
        """``(ahead, behind)`` of the task's HEAD versus ``upstream`` (default: its tracking branch)."""
        ref = upstream or "@{upstream}"
        output = try_git(["rev-list", "--left-right", "--count", f"HEAD...{ref}"], self.worktree_path(task_id))
        if output is None:
            return None
        left, _, right = output.strip().partition("\t")
        try:
            return int(left), int(right.strip() or 0)
        except ValueError:
            return None

    def status(self, task_id: str) -> WorktreeStatus:
        path = self.worktree_path(task_id)
        if not path.exists():
            return WorktreeStatus(task_id=task_id, path=path, exists=False)
        changed = self.changed_files(task_id)
        status = WorktreeStatus(
            task_id=task_id,
            path=path,
            exists=True,
            branch=try_git(["rev-parse", "--abbrev-ref", "HEAD"], path),
            clean=not changed,
            changed_files=changed,
        )
        if status.branch is not None:
            status.branch = status.branch.strip()
        counts = self.divergence(task_id)
        status.compared_to = "upstream"
        if counts is None:
            counts = self.divergence(task_id, self.main_branch)
            status.compared_to = self.main_branch if counts is not None else None
        if counts is not None:
            status.ahead, status.behind = counts
        return status


def parse_status_z(output: str) -> list[str]:
    """Paths from ``git status --porcelain -z``; renames report the new path."""
    files: list[str] = []
    entries = output.split("\0")
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if len(entry) < 4:
            continue
        code, path = entry[:2], entry[3:]
        files.append(path)
        if "R" in code or "C" in code:
            i += 1  # skip the original path
    return files
