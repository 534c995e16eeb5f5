"""File-level overlap between concurrently active agents.

An agent's modified files are its branch's diff against the main branch, or,
while nothing is committed yet, the uncommitted changes in its worktree. Two
agents conflict when those sets intersect. The suggested merge order (fewest
files first) is a heuristic, not a guarantee of a conflict-free sequence.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import combinations
from pathlib import Path

from flotilla.errors import GitError
from flotilla.paths import format_task_id, parse_task_num
from flotilla.store.agents import AgentRecord, AgentRepository
from flotilla.workspace.git import run_git
from flotilla.workspace.worktree import WorktreeManager, parse_status_z

log = logging.getLogger(__name__)


@dataclass(slots=True)
class ConflictPair:
    task_a: str
    task_b: str
    files: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.files)

    def to_dict(self) -> dict[str, object]:
        return {"agents": [self.task_a, self.task_b], "files": list(self.files), "count": self.count}


@dataclass(slots=True)
class ConflictMatrix:
    agents: list[str] = field(default_factory=list)
    files_by_agent: dict[str, list[str]] = field(default_factory=dict)
    matrix: dict[str, dict[str, int]] = field(default_factory=dict)
    conflicts: list[ConflictPair] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def to_dict(self) -> dict[str, object]:
        return {
            "agents": list(self.agents),
            "filesByAgent": {k: list(v) for k, v in self.files_by_agent.items()},
            "matrix": {k: dict(v) for k, v in self.matrix.items()},
            "conflicts": [c.to_dict() for c in self.conflicts],
            "hasConflicts": self.has_conflicts,
        }


class ConflictDetector:
    def __init__(self, worktrees: WorktreeManager, agents: AgentRepository, *, task_digits: int = 3) -> None:
        self.worktrees = worktrees
        self.agents = agents
        self.task_digits = task_digits

    def _task_id(self, record: AgentRecord) -> str:
        return record.task_id or format_task_id(record.task_num, self.task_digits)

    def _locate(self, task_id: str, record: AgentRecord | None = None) -> tuple[Path, str]:
        if record is not None and record.worktree is not None:
            return Path(record.worktree.path), record.worktree.branch
        return self.worktrees.worktree_path(task_id), self.worktrees.branch_name(task_id)

    def _record(self, task_id: str) -> AgentRecord | None:
        num = parse_task_num(task_id)
        return self.agents.get(num) if num is not None else None

    def modified_files(self, task_id: str, record: AgentRecord | None = None) -> set[str]:
        record = record or self._record(task_id)
        path, branch = self._locate(task_id, record)
        try:
            diff = run_git(
                ["diff", "--name-only", f"{self.worktrees.main_branch}...{branch}"],
                self.worktrees.project_root,
            )
            files = {line.strip() for line in diff.splitlines() if line.strip()}
        except GitError as exc:
            log.debug("diff for %s failed: %s", task_id, exc)
            files = set()
        if files:
            return files
        if not path.exists():
            return set()
        try:
            return set(parse_status_z(run_git(["status", "--porcelain", "-z", "--untracked-files=all"], path)))
        except GitError as exc:
            log.debug("status for %s failed: %s", task_id, exc)
            return set()

    def detect_conflicts(self, task_a: str, task_b: str) -> ConflictPair:
        shared = self.modified_files(task_a) & self.modified_files(task_b)
        return ConflictPair(task_a, task_b, sorted(shared))

    def active_agents(self) -> dict[str, AgentRecord]:
        """Dispatched/running agents whose worktree is present on disk."""
        active: dict[str, AgentRecord] = {}
        for record in self.agents.active():
            task_id = self._task_id(record)
            path, _ = self._locate(task_id, record)
            if path.exists():
                active[task_id] = record
        return active

    def build_conflict_matrix(self) -> ConflictMatrix:
        active = self.active_agents()
        agents = sorted(active)
        files_by_agent = {t: sorted(self.modified_files(t, active[t])) for t in agents}
        file_sets = {t: set(files) for t, files in files_by_agent.items()}

        matrix: dict[str, dict[str, int]] = {t: {} for t in agents}
        conflicts: list[ConflictPair] = []
        for a, b in combinations(agents, 2):
            shared = sorted(file_sets[a] & file_sets[b])
            matrix[a][b] = matrix[b][a] = len(shared)
            if shared:
                conflicts.append(ConflictPair(a, b, shared))
        return ConflictMatrix(agents=agents, files_by_agent=files_by_agent, matrix=matrix, conflicts=conflicts)

    def suggest_merge_order(self, matrix: ConflictMatrix | None = None) -> list[str]:
        """Active agents, fewest modified files first (ties by task id)."""
        matrix = matrix or self.build_conflict_matrix()
        return sorted(matrix.agents, key=lambda t: (len(matrix.files_by_agent[t]), t))

    def can_merge_without_conflict(self, task_id: str) -> tuple[bool, list[ConflictPair]]:
        """Whether ``task_id`` shares no modified file with any other active agent."""
        own = self.modified_files(task_id)
        overlaps: list[ConflictPair] = []
        for other, record in self.active_agents().items():
            if other == task_id:
                continue
            shared = own & self.modified_files(other, record)
            if shared:
                overlaps.append(ConflictPair(task_id, other, sorted(shared)))
        return not overlaps, overlaps
