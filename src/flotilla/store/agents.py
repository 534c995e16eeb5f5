"""Agent and run records persisted in the document store."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import StrEnum
from pathlib import Path
from typing import Any

from flotilla.protocol.io import utc_now_iso
from flotilla.store.collection import Collection, Document
from flotilla.store.lock import DEFAULT_TIMEOUT, STALE_AFTER


class AgentStatus(StrEnum):
    SPAWNED = "spawned"
    DISPATCHED = "dispatched"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    KILLED = "killed"
    MERGED = "merged"
    REJECTED = "rejected"


ACTIVE_STATUSES = frozenset({AgentStatus.DISPATCHED, AgentStatus.RUNNING})


@dataclass(slots=True)
class WorktreeRef:
    path: str
    branch: str
    base_branch: str = ""

    def to_dict(self) -> dict[str, str]:
        data = {"path": self.path, "branch": self.branch}
        if self.base_branch:
            data["base_branch"] = self.base_branch
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorktreeRef:
        return cls(
            path=str(data.get("path", "")),
            branch=str(data.get("branch", "")),
            base_branch=str(data.get("base_branch", "")),
        )


# dataclass attribute -> stored document key
_DOC_KEYS: dict[str, str] = {
    "task_num": "taskNum",
    "task_id": "taskId",
    "status": "status",
    "pid": "pid",
    "spawned_at": "spawned_at",
    "worktree": "worktree",
    "log_file": "logFile",
    "json_log_file": "jsonLogFile",
    "sandbox_config_path": "sandboxConfigPath",
    "mcp_config_path": "mcpConfigPath",
    "mcp_socket": "mcpSocket",
    "mcp_port": "mcpPort",
    "ended_at": "ended_at",
    "exit_code": "exit_code",
    "exit_signal": "exit_signal",
    "kill_reason": "kill_reason",
}


@dataclass(slots=True)
class AgentRecord:
    task_num: int
    status: AgentStatus = AgentStatus.SPAWNED
    task_id: str = ""
    pid: int | None = None
    spawned_at: str = field(default_factory=utc_now_iso)
    worktree: WorktreeRef | None = None
    log_file: str | None = None
    json_log_file: str | None = None
    sandbox_config_path: str | None = None
    mcp_config_path: str | None = None
    mcp_socket: str | None = None
    mcp_port: int | None = None
    ended_at: str | None = None
    exit_code: int | None = None
    exit_signal: str | None = None
    kill_reason: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_doc(self) -> Document:
        """Stored form; ``None`` attributes are returned under their key too."""
        doc: Document = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, WorktreeRef):
                value = value.to_dict()
            elif isinstance(value, AgentStatus):
                value = str(value)
            doc[_DOC_KEYS[f.name]] = value
        return doc

    @classmethod
    def from_doc(cls, doc: Document) -> AgentRecord:
        kwargs: dict[str, Any] = {}
        for attr, key in _DOC_KEYS.items():
            if key in doc:
                kwargs[attr] = doc[key]
        kwargs["task_num"] = int(kwargs.get("task_num", 0))
        try:
            kwargs["status"] = AgentStatus(kwargs.get("status", AgentStatus.SPAWNED))
        except ValueError:
            kwargs["status"] = AgentStatus.FAILED
        worktree = kwargs.get("worktree")
        kwargs["worktree"] = WorktreeRef.from_dict(worktree) if isinstance(worktree, dict) else None
        return cls(**kwargs)


class AgentRepository:
    """Agent records keyed by ``taskNum`` in ``<db>/agents.json``."""

    def __init__(self, db_dir: Path, *, lock_timeout: float = DEFAULT_TIMEOUT, lock_stale: float = STALE_AFTER) -> None:
        self.collection = Collection(db_dir / "agents.json", lock_timeout=lock_timeout, lock_stale=lock_stale)
        self._indexed = False

    def _ensure_index(self) -> None:
        if not self._indexed:
            self.collection.ensure_index("taskNum", unique=True)
            self._indexed = True

    def upsert(self, record: AgentRecord) -> AgentRecord:
        self._ensure_index()
        doc = record.to_doc()
        to_set = {k: v for k, v in doc.items() if v is not None}
        to_unset = [k for k, v in doc.items() if v is None]
        ops: dict[str, Any] = {"$set": to_set}
        if to_unset:
            ops["$unset"] = to_unset
        self.collection.update({"taskNum": record.task_num}, ops, upsert=True)
        return record

    def get(self, task_num: int) -> AgentRecord | None:
        doc = self.collection.find_one({"taskNum": task_num})
        return AgentRecord.from_doc(doc) if doc else None

    def all(self) -> list[AgentRecord]:
        records = [AgentRecord.from_doc(doc) for doc in self.collection.read_all()]
        return sorted(records, key=lambda r: r.task_num)

    def active(self) -> list[AgentRecord]:
        docs = self.collection.find({"status": {"$in": [str(s) for s in ACTIVE_STATUSES]}})
        return sorted((AgentRecord.from_doc(d) for d in docs), key=lambda r: r.task_num)

    def update_status(self, task_num: int, status: AgentStatus, **changes: Any) -> bool:
        """Set ``status`` plus any other record attributes; False if no such agent."""
        to_set: dict[str, Any] = {"status": str(status)}
        for attr, value in changes.items():
            if attr not in _DOC_KEYS:
                raise ValueError(f"Unknown agent attribute: {attr}")
            to_set[_DOC_KEYS[attr]] = value.to_dict() if isinstance(value, WorktreeRef) else value
        result = self.collection.update({"taskNum": task_num}, {"$set": to_set})
        return result.matched > 0

    def delete(self, task_num: int) -> bool:
        return self.collection.remove({"taskNum": task_num}, multi=False) > 0

    def clear(self) -> None:
        self.collection.clear()


class RunRepository:
    """History of agent runs in ``<db>/runs.json``."""

    def __init__(self, db_dir: Path, *, lock_timeout: float = DEFAULT_TIMEOUT, lock_stale: float = STALE_AFTER) -> None:
        self.collection = Collection(db_dir / "runs.json", lock_timeout=lock_timeout, lock_stale=lock_stale)

    def start(self, task_id: str, operation: str, pid: int | None = None) -> Document:
        doc = {
            "taskId": task_id,
            "operation": operation,
            "pid": pid,
            "started_at": utc_now_iso(),
            "status": "running",
        }
        return self.collection.insert(doc)  # type: ignore[return-value]

    def finish(
        self,
        run_id: str,
        *,
        status: str,
        exit_code: int | None = None,
        reason: str | None = None,
    ) -> bool:
        ops = {"$set": {"status": status, "exit_code": exit_code, "reason": reason, "ended_at": utc_now_iso()}}
        return self.collection.update({"_id": run_id}, ops).matched > 0

    def for_task(self, task_id: str) -> list[Document]:
        docs = self.collection.find({"taskId": task_id})
        return sorted(docs, key=lambda d: d.get("started_at", ""), reverse=True)
