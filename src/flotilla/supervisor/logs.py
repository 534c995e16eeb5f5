"""Paired raw/filtered run logs with generation rotation."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import IO

from flotilla.protocol.io import utc_now_iso

log = logging.getLogger(__name__)

KEEP_GENERATIONS = 3


def rotate_log(path: Path, keep: int = KEEP_GENERATIONS) -> None:
    """Shift ``path -> .1 -> .2 -> ... -> .<keep>``, dropping the oldest.

    Best-effort: a generation that cannot be moved is left where it is.
    """
    try:
        path.with_name(f"{path.name}.{keep}").unlink(missing_ok=True)
    except OSError as exc:
        log.debug("Could not drop oldest log generation of %s: %s", path, exc)
    for gen in range(keep - 1, -1, -1):
        src = path.with_name(f"{path.name}.{gen}") if gen else path
        if not src.exists():
            continue
        try:
            src.replace(path.with_name(f"{path.name}.{gen + 1}"))
        except OSError as exc:
            log.debug("Could not rotate %s: %s", src, exc)


class DualLog:
    """``<base>.jsonlog`` gets the exact stdout and stderr bytes; ``<base>.log`` gets condensed lines."""

    def __init__(self, base: Path) -> None:
        self.base = base
        self.log_path = base.with_name(base.name + ".log")
        self.json_log_path = base.with_name(base.name + ".jsonlog")
        self._text: IO[str] | None = None
        self._raw: IO[bytes] | None = None

    @property
    def is_open(self) -> bool:
        return self._text is not None

    def open(self, header: dict[str, object]) -> None:
        self.base.parent.mkdir(parents=True, exist_ok=True)
        rotate_log(self.log_path)
        rotate_log(self.json_log_path)
        self._text = self.log_path.open("w", encoding="utf-8")
        self._raw = self.json_log_path.open("wb")
        lines = [f"=== Started: {utc_now_iso()} ==="]
        lines += [f"{key}: {value}" for key, value in header.items()]
        block = "\n".join(lines) + "\n\n"
        self._text.write(block)
        self._raw.write("".join(f"# {line}\n" for line in lines).encode("utf-8"))
        self.flush()

    def write_raw(self, data: bytes) -> None:
        if self._raw is not None:
            self._raw.write(data)
            self._raw.flush()

    def write_line(self, line: str) -> None:
        if self._text is not None:
            self._text.write(line.rstrip("\n") + "\n")
            self._text.flush()

    def flush(self) -> None:
        for handle in (self._text, self._raw):
            if handle is not None:
                handle.flush()

    def close(self, footer: str) -> None:
        text, raw = self._text, self._raw
        self._text = self._raw = None
        stamp = f"=== Ended: {utc_now_iso()} === {footer}\n"
        if text is not None:
            text.write("\n" + stamp)
            text.close()
        if raw is not None:
            raw.write(f"\n# {stamp}".encode("utf-8"))
            raw.close()
