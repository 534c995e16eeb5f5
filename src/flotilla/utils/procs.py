"""Process liveness helpers."""

from __future__ import annotations

import os


def pid_alive(pid: int | None) -> bool:
    """Signal-0 liveness check. A process owned by another user still counts as alive."""
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True
