"""Thin wrapper around the git CLI."""

from __future__ import annotations

import subprocess
from pathlib import Path

from flotilla.errors import GitError


def run_git(args: list[str], cwd: Path) -> str:
    """Run ``git <args>`` in ``cwd`` and return stdout; raise ``GitError`` on failure."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as exc:
        raise GitError(args, exc.returncode, exc.stderr or "") from exc
    except FileNotFoundError as exc:
        raise GitError(args, 127, "git executable not found") from exc
    return result.stdout


def try_git(args: list[str], cwd: Path) -> str | None:
    """Like :func:`run_git` but ``None`` on failure."""
    try:
        return run_git(args, cwd)
    except GitError:
        return None
