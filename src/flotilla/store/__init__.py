"""Locked JSON document store."""

from flotilla.store.agents import ACTIVE_STATUSES, AgentRecord, AgentRepository, AgentStatus, RunRepository, WorktreeRef
from flotilla.store.collection import Collection, UpdateResult
from flotilla.store.lock import FileLock

__all__ = [
    "ACTIVE_STATUSES",
    "AgentRecord",
    "AgentRepository",
    "AgentStatus",
    "Collection",
    "FileLock",
    "RunRepository",
    "UpdateResult",
    "WorktreeRef",
]
