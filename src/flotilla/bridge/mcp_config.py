"""Coordination-service client configs handed to the worker.

Three shapes, depending on how the worker reaches the service:

* ``socket``: pipe stdio through ``socat`` to a Unix socket,
* ``tcp``: pipe stdio through ``nc`` to a localhost port,
* ``internal``: start a private service process restricted to one task.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

from flotilla.protocol.io import write_json_atomic

SERVER_NAME = "flotilla"


def _wrap(command: str, args: list[str]) -> dict[str, Any]:
    return {"mcpServers": {SERVER_NAME: {"command": command, "args": args}}}


def socket_config(socket_path: Path, *, socat_binary: str = "socat") -> dict[str, Any]:
    return _wrap(socat_binary, ["-", f"UNIX-CONNECT:{socket_path}"])


def tcp_config(port: int, *, host: str = "127.0.0.1") -> dict[str, Any]:
    return _wrap("nc", [host, str(port)])


def internal_config(server_command: Sequence[str], project_root: Path, task_id: str | None = None) -> dict[str, Any]:
    if not server_command:
        raise ValueError("server_command must not be empty")
    args = [*server_command[1:], "--project-root", str(project_root)]
    if task_id:
        args += ["--task-id", task_id]
    return _wrap(server_command[0], args)


def write_coordination_config(path: Path, config: dict[str, Any]) -> Path:
    write_json_atomic(path, config)
    return path
