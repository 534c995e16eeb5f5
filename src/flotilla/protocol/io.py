"""File IO helpers with atomic writes."""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, UnicodeDecodeError):
        return default


def write_text_atomic(path: Path, payload: str, *, tmp_path: Path | None = None) -> None:
    """Write ``payload`` to a temp file, fsync it, then rename it over ``path``."""
    ensure_parent(path)
    tmp = tmp_path or path.with_name(f"{path.name}.tmp.{os.getpid()}")
    try:
        with tmp.open("w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def write_json_atomic(path: Path, data: Any, *, tmp_path: Path | None = None) -> None:
    write_text_atomic(path, json.dumps(data, indent=2, sort_keys=False) + "\n", tmp_path=tmp_path)


def unlink_quiet(path: Path) -> bool:
    """Remove ``path`` if present; report whether anything was removed."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
