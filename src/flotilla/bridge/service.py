"""Liveness contract of the external coordination service.

The service daemon announces itself in the haven with ``mcp.pid`` plus
either ``mcp.sock`` (Unix socket) or ``mcp.port`` (TCP on localhost). It is
running when the pid answers signal 0 and one of the two endpoints is
advertised; otherwise all three files are stale and are removed. The engine
never starts the service itself.
"""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from pathlib import Path

from flotilla.errors import BridgeError, ServiceNotRunningError
from flotilla.paths import HavenLayout
from flotilla.protocol.io import unlink_quiet, write_text_atomic
from flotilla.utils.procs import pid_alive

log = logging.getLogger(__name__)

PORT_RANGE = (9100, 9199)


@dataclass(slots=True)
class ServiceStatus:
    running: bool
    mode: str | None = None  # "socket" | "port"
    pid: int | None = None
    socket: Path | None = None
    port: int | None = None


def _read_int(path: Path) -> int | None:
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


class CoordinationService:
    def __init__(self, layout: HavenLayout, *, start_hint: str = "flotilla-conductor start") -> None:
        self.layout = layout
        self.start_hint = start_hint

    def status(self) -> ServiceStatus:
        pid = _read_int(self.layout.mcp_pid)
        if pid is not None and pid_alive(pid):
            port = _read_int(self.layout.mcp_port)
            if port is not None:
                return ServiceStatus(running=True, mode="port", pid=pid, port=port)
            if self.layout.mcp_socket.exists():
                return ServiceStatus(running=True, mode="socket", pid=pid, socket=self.layout.mcp_socket)
        self.clear_stale()
        return ServiceStatus(running=False)

    def require_running(self) -> ServiceStatus:
        status = self.status()
        if not status.running:
            raise ServiceNotRunningError(str(self.layout.root), self.start_hint)
        return status

    def register(self, pid: int, *, socket_path: Path | None = None, port: int | None = None) -> None:
        """Daemon side: advertise ``pid`` and exactly one endpoint."""
        if (socket_path is None) == (port is None):
            raise BridgeError("register needs exactly one of socket_path or port")
        self.layout.root.mkdir(parents=True, exist_ok=True)
        if port is not None:
            write_text_atomic(self.layout.mcp_port, f"{port}\n")
        else:
            unlink_quiet(self.layout.mcp_port)
        write_text_atomic(self.layout.mcp_pid, f"{pid}\n")

    def unregister(self) -> None:
        for path in (self.layout.mcp_pid, self.layout.mcp_port, self.layout.mcp_socket):
            unlink_quiet(path)

    def clear_stale(self) -> None:
        removed = [p.name for p in (self.layout.mcp_pid, self.layout.mcp_port, self.layout.mcp_socket) if _unlink(p)]
        if removed:
            log.info("Removed stale coordination service files: %s", ", ".join(removed))


def _unlink(path: Path) -> bool:
    try:
        return unlink_quiet(path)
    except OSError as exc:
        log.debug("Could not remove %s: %s", path, exc)
        return False


def find_free_port(start: int = PORT_RANGE[0], end: int = PORT_RANGE[1], host: str = "127.0.0.1") -> int:
    for port in range(start, end + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, port))
            except OSError:
                continue
            return port
    raise BridgeError(f"No free port in range {start}-{end}")
