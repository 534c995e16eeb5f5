"""Transport selection between a worker and the coordination service."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Sequence

from flotilla.bridge.mcp_config import internal_config, socket_config, tcp_config, write_coordination_config
from flotilla.bridge.service import CoordinationService
from flotilla.bridge.socat import BridgeHandle, SocketBridge
from flotilla.errors import BridgeError
from flotilla.paths import AgentPaths

log = logging.getLogger(__name__)


class TransportMode(StrEnum):
    SOCKET = "socket"  # service's own Unix socket
    TCP = "tcp"  # service's localhost port, reached directly
    BRIDGE = "bridge"  # service's port, reached through a per-agent Unix socket
    INTERNAL = "internal"  # private service process spawned by the worker


@dataclass(slots=True)
class BridgeConnection:
    mode: TransportMode
    config_path: Path
    socket: Path | None = None
    port: int | None = None
    service_pid: int | None = None
    handle: BridgeHandle | None = field(default=None, repr=False)

    def cleanup(self) -> None:
        if self.handle is not None:
            self.handle.cleanup()

    async def aclose(self) -> None:
        if self.handle is not None:
            await self.handle.aclose()


class Bridge:
    def __init__(
        self,
        service: CoordinationService,
        *,
        socket_bridge: SocketBridge | None = None,
        server_command: Sequence[str] = ("flotilla-conductor",),
        external: bool = True,
        startup_timeout: float = 2.0,
        platform: str | None = None,
    ) -> None:
        self.service = service
        self.socket_bridge = socket_bridge or SocketBridge()
        self.server_command = list(server_command)
        self.external = external
        self.startup_timeout = startup_timeout
        self.platform = platform or sys.platform

    def isolates_network(self, sandboxed: bool) -> bool:
        """The Linux sandbox runs the worker in its own network namespace."""
        return sandboxed and self.platform.startswith("linux")

    async def establish(
        self,
        agent_paths: AgentPaths,
        *,
        project_root: Path,
        task_id: str,
        sandboxed: bool,
    ) -> BridgeConnection:
        """Pick a transport, start a bridge if needed, and write the worker's config.

        Raises ``ServiceNotRunningError`` when an external service is expected
        but absent, and ``BridgeError`` when the bridge cannot start.
        """
        config_path = agent_paths.mcp_config
        if not self.external:
            write_coordination_config(config_path, internal_config(self.server_command, project_root, task_id))
            return BridgeConnection(mode=TransportMode.INTERNAL, config_path=config_path)

        status = self.service.require_running()
        if status.mode == "socket":
            conn = BridgeConnection(
                mode=TransportMode.SOCKET,
                config_path=config_path,
                socket=status.socket,
                service_pid=status.pid,
            )
            write_coordination_config(config_path, socket_config(status.socket, socat_binary=self.socket_bridge.binary))
            return conn

        if status.port is None:
            raise BridgeError(
                "Coordination service reports neither a socket nor a port",
                details={"mode": status.mode, "pid": status.pid},
            )
        if not self.isolates_network(sandboxed):
            write_coordination_config(config_path, tcp_config(status.port))
            return BridgeConnection(
                mode=TransportMode.TCP, config_path=config_path, port=status.port, service_pid=status.pid
            )

        handle = await self.socket_bridge.start(agent_paths.bridge_socket, status.port, timeout=self.startup_timeout)
        conn = BridgeConnection(
            mode=TransportMode.BRIDGE,
            config_path=config_path,
            socket=handle.socket_path,
            port=status.port,
            service_pid=status.pid,
            handle=handle,
        )
        try:
            write_coordination_config(config_path, socket_config(handle.socket_path, socat_binary=self.socket_bridge.binary))
        except BaseException:
            await conn.aclose()
            raise
        log.info("Bridged %s to coordination port %d for %s", handle.socket_path, status.port, task_id)
        return conn
