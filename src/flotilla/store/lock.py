"""Advisory exclusive lock files for collection writes.

A lock is a sibling ``<file>.lock`` created with ``O_CREAT | O_EXCL`` and
holding ``{pid, time, host, token}``. A lock older than the staleness window
is presumed abandoned and is reclaimed: it is first renamed aside, and only
deleted if the renamed file is still the one judged stale. Acquisition
retries with a short jittered sleep until the timeout elapses.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
import uuid
from pathlib import Path
from types import TracebackType

from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_delay, wait_fixed, wait_random

from flotilla.errors import LockTimeoutError
from flotilla.protocol.io import unlink_quiet

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
STALE_AFTER = 30.0
RETRY_INTERVAL = 0.05
RETRY_JITTER = 0.05


class LockBusy(Exception):
    """The lock is currently held by someone else."""


class FileLock:
    """Exclusive lock guarding one collection file."""

    def __init__(
        self,
        target: Path,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        stale_after: float = STALE_AFTER,
    ) -> None:
        self.path = target.with_name(target.name + ".lock")
        self.timeout = timeout
        self.stale_after = stale_after
        self._token: str | None = None

    @property
    def held(self) -> bool:
        return self._token is not None

    def acquire(self) -> None:
        retrying = Retrying(
            stop=stop_after_delay(self.timeout),
            wait=wait_fixed(RETRY_INTERVAL) + wait_random(0, RETRY_JITTER),
            retry=retry_if_exception_type(LockBusy),
        )
        try:
            retrying(self._try_acquire)
        except RetryError as exc:
            raise LockTimeoutError(str(self.path), self.timeout) from exc

    def release(self) -> None:
        if self._token is None:
            return
        token, self._token = self._token, None
        info = self._read_info()
        if info is not None and info.get("token") not in (None, token):
            # Reclaimed as stale by another process; it is theirs now.
            log.warning("Lock %s was taken over while held", self.path)
            return
        unlink_quiet(self.path)

    def _try_acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                info = self._read_info()
                if not self._is_stale(info) or not self._reclaim(info):
                    raise LockBusy(str(self.path)) from None
                continue
            token = uuid.uuid4().hex
            info = {"pid": os.getpid(), "time": time.time(), "host": socket.gethostname(), "token": token}
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(info, handle)
            self._token = token
            return
        raise LockBusy(str(self.path))

    def _read_info(self, path: Path | None = None) -> dict | None:
        try:
            data = json.loads((path or self.path).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def _is_stale(self, info: dict | None) -> bool:
        if info is not None and isinstance(info.get("time"), (int, float)):
            return time.time() - info["time"] > self.stale_after
        # Unreadable or half-written: judge by file age only.
        return self._old(self.path)

    def _old(self, path: Path) -> bool:
        try:
            return time.time() - path.stat().st_mtime > self.stale_after
        except FileNotFoundError:
            return False

    def _reclaim(self, judged: dict | None) -> bool:
        """Remove the stale lock described by ``judged``; False if it changed hands first."""
        aside = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex[:8]}.stale")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return True
        taken = self._read_info(aside)
        unchanged = (taken == judged) if judged is not None else (taken is None and self._old(aside))
        if unchanged:
            log.info("Reclaiming stale lock %s", self.path)
            unlink_quiet(aside)
            return True
        # A fresh lock was moved aside; put it back unless yet another holder appeared.
        try:
            os.link(aside, self.path)
        except FileExistsError:
            log.warning("Lock %s changed hands twice during reclaim", self.path)
        unlink_quiet(aside)
        return False

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
