"""Exclusive per-task claims backed by marker files.

A claim is ``agents/<taskId>/run.yaml`` holding ``{taskId, operation,
started_at, pid}``. The marker is created with ``O_EXCL`` so two claimers
racing on the same task cannot both win.

A claim is never reclaimed automatically: if its holder crashes, the marker
stays until someone calls :meth:`ClaimRegistry.release`. ``holder_alive``
reports whether the recorded pid still answers signal 0 so an operator
can decide.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from flotilla.protocol.io import utc_now_iso
from flotilla.utils.procs import pid_alive

log = logging.getLogger(__name__)

MARKER_NAME = "run.yaml"


@dataclass(slots=True)
class ClaimResult:
    success: bool = True
    already_claimed: bool = False
    not_claimed: bool = False
    marker: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.already_claimed:
            data["alreadyClaimed"] = True
        if self.not_claimed:
            data["notClaimed"] = True
        return data


class ClaimRegistry:
    def __init__(self, agents_dir: Path) -> None:
        self.agents_dir = Path(agents_dir)

    def marker_path(self, task_id: str) -> Path:
        return self.agents_dir / task_id / MARKER_NAME

    def claim(self, task_id: str, operation: str, *, pid: int | None = None) -> ClaimResult:
        path = self.marker_path(task_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        marker = {
            "taskId": task_id,
            "operation": operation,
            "started_at": utc_now_iso(),
            "pid": pid if pid is not None else os.getpid(),
        }
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return ClaimResult(already_claimed=True, marker=self.read_marker(task_id))
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(marker, handle, sort_keys=False)
        log.debug("Claimed %s for %s", task_id, operation)
        return ClaimResult(marker=marker)

    def release(self, task_id: str) -> ClaimResult:
        try:
            self.marker_path(task_id).unlink()
        except FileNotFoundError:
            return ClaimResult(not_claimed=True)
        log.debug("Released %s", task_id)
        return ClaimResult()

    def is_claimed(self, task_id: str) -> bool:
        return self.marker_path(task_id).exists()

    def read_marker(self, task_id: str) -> dict[str, Any] | None:
        path = self.marker_path(task_id)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, yaml.YAMLError):
            return {}
        return data if isinstance(data, dict) else {}

    def list_claims(self) -> list[dict[str, Any]]:
        if not self.agents_dir.exists():
            return []
        claims = []
        for child in sorted(self.agents_dir.iterdir()):
            marker = self.read_marker(child.name) if child.is_dir() else None
            if marker is not None:
                claims.append({"taskId": child.name, **marker})
        return claims

    def holder_alive(self, task_id: str) -> bool | None:
        """Whether the claim holder's pid is alive; ``None`` when unclaimed or unknown."""
        marker = self.read_marker(task_id)
        if not marker or not isinstance(marker.get("pid"), int):
            return None
        return pid_alive(marker["pid"])
