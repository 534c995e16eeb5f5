"""Flotilla error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    STORE = "store"
    CLAIM = "claim"
    SANDBOX = "sandbox"
    BRIDGE = "bridge"
    PROCESS = "process"
    GIT = "git"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class FlotillaError(Exception):
    """Base error for all engine exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class LockTimeoutError(FlotillaError):
    """A collection lock could not be acquired in time."""

    def __init__(self, lock_path: str, timeout: float) -> None:
        super().__init__(
            f"Could not acquire lock {lock_path} within {timeout}s",
            category=ErrorCategory.STORE,
            retryable=True,
            details={"lock_path": lock_path, "timeout": timeout},
        )
        self.lock_path = lock_path
        self.timeout = timeout


class DuplicateKeyError(FlotillaError):
    """Insert or upsert would violate a unique index."""

    def __init__(self, field: str, value: Any) -> None:
        super().__init__(
            f"Duplicate value for unique field '{field}': {value!r}",
            category=ErrorCategory.STORE,
        )
        self.field = field
        self.value = value


class ClaimConflictError(FlotillaError):
    """A task is already claimed by another run."""

    def __init__(self, task_id: str, marker: dict[str, Any] | None = None) -> None:
        holder = (marker or {}).get("pid")
        super().__init__(
            f"Task {task_id} is already claimed (pid {holder})",
            category=ErrorCategory.CLAIM,
            details={"marker": marker or {}},
        )
        self.task_id = task_id


class SandboxPolicyError(FlotillaError):
    """Sandbox policy could not be built or loaded."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.SANDBOX, **kwargs)


class BridgeError(FlotillaError):
    """The socket bridge could not be established."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.BRIDGE, **kwargs)


class ServiceNotRunningError(BridgeError):
    """The coordination service is required but not running."""

    def __init__(self, haven_dir: str, remediation: str) -> None:
        super().__init__(
            f"Coordination service is not running (haven: {haven_dir}). Start it with: {remediation}",
            details={"haven_dir": haven_dir},
        )
        self.remediation = remediation


class SpawnError(FlotillaError):
    """The worker process could not be started."""

    def __init__(self, message: str, *, remediation: str = "", **kwargs: Any) -> None:
        if remediation:
            message = f"{message}. {remediation}"
        super().__init__(message, category=ErrorCategory.PROCESS, **kwargs)
        self.remediation = remediation


class GitError(FlotillaError):
    """A git command failed."""

    def __init__(self, args: list[str], returncode: int, stderr: str = "") -> None:
        super().__init__(
            f"git {' '.join(args)} failed ({returncode}): {stderr.strip()}",
            category=ErrorCategory.GIT,
            details={"args": args, "returncode": returncode},
        )
        self.returncode = returncode
        self.stderr = stderr


class WorktreeError(FlotillaError):
    """Worktree lifecycle operation failed."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.GIT, **kwargs)


class ConfigurationError(FlotillaError):
    """Invalid or missing configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, retryable=False)
