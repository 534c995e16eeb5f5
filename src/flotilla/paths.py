"""Host-level directory layout and task identifier helpers."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path

PROJECT_DIR = ".flotilla"
USER_DIR_NAME = ".flotilla"

_TASK_RE = re.compile(r"^T(\d+)$", re.IGNORECASE)


def find_project_root(start: Path | None = None) -> Path | None:
    """Find the project root by looking for .flotilla/ or .git/."""
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        if (parent / PROJECT_DIR).exists():
            return parent
        if (parent / ".git").exists():
            return parent
    return None


def get_user_config_dir() -> Path:
    """Get the user-level config directory (~/.flotilla/)."""
    return Path.home() / USER_DIR_NAME


def project_hash(project_root: Path) -> str:
    digest = hashlib.sha256(str(project_root.resolve()).encode("utf-8")).hexdigest()
    return digest[:12]


def default_haven_dir(project_root: Path) -> Path:
    return get_user_config_dir() / "havens" / project_hash(project_root)


def parse_task_num(task_id: str) -> int | None:
    """``"T005"`` -> ``5``; anything that is not ``T<digits>`` -> ``None``."""
    match = _TASK_RE.match(task_id.strip())
    return int(match.group(1)) if match else None


def format_task_id(num: int, digits: int = 3) -> str:
    return f"T{num:0{digits}d}"


@dataclass(slots=True)
class HavenLayout:
    """Shared host-level directory for one project.

    Everything the engine keeps outside the repository lives here: claim
    markers and per-agent state, worktrees, the document store, and the
    coordination service's pid/socket/port files.
    """

    root: Path
    worktrees_override: Path | None = None

    @property
    def agents_dir(self) -> Path:
        return self.root / "agents"

    @property
    def worktrees_dir(self) -> Path:
        return self.worktrees_override or (self.root / "worktrees")

    @property
    def artefacts_dir(self) -> Path:
        return self.root / "artefacts"

    @property
    def db_dir(self) -> Path:
        return self.root / "db"

    @property
    def mcp_socket(self) -> Path:
        return self.root / "mcp.sock"

    @property
    def mcp_pid(self) -> Path:
        return self.root / "mcp.pid"

    @property
    def mcp_port(self) -> Path:
        return self.root / "mcp.port"

    @property
    def base_policy(self) -> Path:
        return self.root / "srt-settings.json"

    def agent_dir(self, task_id: str) -> Path:
        return self.agents_dir / task_id

    def ensure(self) -> HavenLayout:
        for path in (self.agents_dir, self.worktrees_dir, self.artefacts_dir, self.db_dir):
            path.mkdir(parents=True, exist_ok=True)
        return self


@dataclass(slots=True)
class AgentPaths:
    """Per-agent files under ``agents/<taskId>/``."""

    root: Path

    @property
    def marker(self) -> Path:
        return self.root / "run.yaml"

    @property
    def log_base(self) -> Path:
        return self.root / "run"

    @property
    def log_file(self) -> Path:
        return self.root / "run.log"

    @property
    def json_log_file(self) -> Path:
        return self.root / "run.jsonlog"

    @property
    def policy_file(self) -> Path:
        return self.root / "srt-settings.json"

    @property
    def mcp_config(self) -> Path:
        return self.root / "mcp-config.json"

    @property
    def home(self) -> Path:
        return self.root / "home"

    @property
    def tmp(self) -> Path:
        return self.root / "tmp"

    @property
    def bridge_socket(self) -> Path:
        return self.root / "mcp-bridge.sock"
