"""Unix-socket to TCP forwarder for network-isolated sandboxes."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path

from flotilla.errors import BridgeError
from flotilla.protocol.io import unlink_quiet

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.05
STOP_TIMEOUT = 2.0


@dataclass(slots=True)
class BridgeHandle:
    process: asyncio.subprocess.Process
    socket_path: Path
    port: int
    _closed: bool = field(default=False, repr=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def cleanup(self) -> None:
        """Stop the forwarder and remove its socket. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        if self.process.returncode is None:
            self._signal(signal.SIGTERM)
        try:
            unlink_quiet(self.socket_path)
        except OSError as exc:
            log.debug("Could not remove bridge socket %s: %s", self.socket_path, exc)

    async def aclose(self, timeout: float = STOP_TIMEOUT) -> None:
        """Stop the forwarder and wait for it to exit, killing it after ``timeout``."""
        self.cleanup()
        if self.process.returncode is not None:
            return
        try:
            await asyncio.wait_for(self.process.wait(), timeout)
        except asyncio.TimeoutError:
            log.warning("Bridge pid %s ignored SIGTERM; killing it", self.process.pid)
            self._signal(signal.SIGKILL)
            await self.process.wait()

    def _signal(self, sig: signal.Signals) -> None:
        # The forwarder leads its own session; its forked connection handlers share the group.
        try:
            os.killpg(self.process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self.process.send_signal(sig)


class SocketBridge:
    """Spawns ``socat`` listening on a Unix socket and forwarding to localhost TCP."""

    def __init__(self, binary: str = "socat", *, host: str = "127.0.0.1") -> None:
        self.binary = binary
        self.host = host

    def build_command(self, socket_path: Path, port: int) -> list[str]:
        return [
            self.binary,
            f"UNIX-LISTEN:{socket_path},fork,mode=666",
            f"TCP:{self.host}:{port}",
        ]

    async def start(self, socket_path: Path, port: int, *, timeout: float = 2.0) -> BridgeHandle:
        socket_path.parent.mkdir(parents=True, exist_ok=True)
        unlink_quiet(socket_path)
        cmd = self.build_command(socket_path, port)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise BridgeError(f"'{cmd[0]}' not found. Install it or add it to PATH.") from exc

        handle = BridgeHandle(process=process, socket_path=socket_path, port=port)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if socket_path.exists():
                log.debug("Bridge %s -> %s:%d ready (pid %s)", socket_path, self.host, port, process.pid)
                return handle
            if process.returncode is not None:
                break
            await asyncio.sleep(POLL_INTERVAL)

        exited = process.returncode
        if exited is None:
            process.kill()
            await process.wait()
        handle.cleanup()
        detail = f"exited with code {exited}" if exited is not None else f"did not create it within {timeout}s"
        raise BridgeError(
            f"Bridge socket {socket_path} for port {port} not available: {cmd[0]} {detail}",
            details={"socket": str(socket_path), "port": port},
        )
