"""Private HOME for a sandboxed worker.

The worker's config and OAuth credentials are copied from the real HOME
before spawn, and the credential copy is deleted once the worker exits.
Both steps are best-effort.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

log = logging.getLogger(__name__)

CONFIG_FILES = [".claude.json"]
CREDENTIAL_FILES = [".claude/.credentials.json"]


class SandboxHome:
    def __init__(self, home: Path, real_home: Path | None = None) -> None:
        self.home = home
        self.real_home = real_home or Path.home()
        self._copied_credentials: list[Path] = []

    def prepare(self) -> None:
        try:
            self.home.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            log.debug("Could not create sandbox home %s: %s", self.home, exc)
            return
        for rel in CONFIG_FILES:
            self._copy(rel)
        for rel in CREDENTIAL_FILES:
            dest = self._copy(rel)
            if dest is not None:
                self._copied_credentials.append(dest)

    def cleanup(self) -> None:
        while self._copied_credentials:
            path = self._copied_credentials.pop()
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                log.debug("Could not remove credential copy %s: %s", path, exc)

    def _copy(self, rel: str) -> Path | None:
        src = self.real_home / rel
        if not src.is_file():
            return None
        dest = self.home / rel
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)
        except OSError as exc:
            log.debug("Could not copy %s into sandbox home: %s", src, exc)
            return None
        return dest
