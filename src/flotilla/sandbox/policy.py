"""Per-agent sandbox policies for the sandbox wrapper.

A policy is a JSON document with a ``network`` section (domain allow/deny
lists and Unix sockets) and a ``filesystem`` section (allow-write,
deny-write and deny-read paths). Each agent gets a fresh policy derived from
a base policy: its write access is narrowed to its own worktree, logs and
private tool state, and its read access excludes every other agent's
worktree and state as well as the shared artefacts directory.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flotilla.errors import SandboxPolicyError
from flotilla.paths import AgentPaths, HavenLayout
from flotilla.protocol.io import write_json_atomic

log = logging.getLogger(__name__)

DEFAULT_ALLOWED_DOMAINS = [
    "localhost",
    "127.0.0.1",
    "api.anthropic.com",
    "*.anthropic.com",
    "sentry.io",
    "statsig.anthropic.com",
    "github.com",
    "*.github.com",
    "api.github.com",
    "raw.githubusercontent.com",
    "registry.npmjs.org",
    "*.npmjs.org",
]

# Relative to a HOME directory.
DEFAULT_WRITE_STATE = [".claude", ".claude.json", ".npm/_logs", ".gradle"]
DEFAULT_DENY_READ = [".ssh", ".gnupg", ".aws", ".config/gcloud", ".azure"]

# Worker state that must stay writable inside a private sandbox HOME.
TOOL_STATE_PATHS = [".claude", ".claude.json", ".cache/claude-cli-nodejs", ".npm/_logs", ".gradle"]


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


@dataclass(slots=True)
class NetworkPolicy:
    allowed_domains: list[str] = field(default_factory=list)
    denied_domains: list[str] = field(default_factory=list)
    allow_unix_sockets: list[str] = field(default_factory=list)
    allow_all_unix_sockets: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "allowedDomains": list(self.allowed_domains),
            "deniedDomains": list(self.denied_domains),
            "allowUnixSockets": list(self.allow_unix_sockets),
        }
        if self.allow_all_unix_sockets is not None:
            data["allowAllUnixSockets"] = self.allow_all_unix_sockets
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NetworkPolicy:
        allow_all = data.get("allowAllUnixSockets")
        return cls(
            allowed_domains=_str_list(data.get("allowedDomains")),
            denied_domains=_str_list(data.get("deniedDomains")),
            allow_unix_sockets=_str_list(data.get("allowUnixSockets")),
            allow_all_unix_sockets=bool(allow_all) if allow_all is not None else None,
        )


@dataclass(slots=True)
class FilesystemPolicy:
    allow_write: list[str] = field(default_factory=list)
    deny_write: list[str] = field(default_factory=list)
    deny_read: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowWrite": list(self.allow_write),
            "denyWrite": list(self.deny_write),
            "denyRead": list(self.deny_read),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FilesystemPolicy:
        return cls(
            allow_write=_str_list(data.get("allowWrite")),
            deny_write=_str_list(data.get("denyWrite")),
            deny_read=_str_list(data.get("denyRead")),
        )


@dataclass(slots=True)
class SandboxPolicy:
    network: NetworkPolicy = field(default_factory=NetworkPolicy)
    filesystem: FilesystemPolicy = field(default_factory=FilesystemPolicy)

    def to_dict(self) -> dict[str, Any]:
        return {"network": self.network.to_dict(), "filesystem": self.filesystem.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SandboxPolicy:
        network = data.get("network") if isinstance(data.get("network"), dict) else {}
        filesystem = data.get("filesystem") if isinstance(data.get("filesystem"), dict) else {}
        return cls(network=NetworkPolicy.from_dict(network), filesystem=FilesystemPolicy.from_dict(filesystem))

    def copy(self) -> SandboxPolicy:
        return SandboxPolicy.from_dict(self.to_dict())


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value]


def default_policy(home: Path | None = None) -> SandboxPolicy:
    """Built-in base policy: common tool state and ``/tmp`` writable, credentials unreadable."""
    home = home or Path.home()
    return SandboxPolicy(
        network=NetworkPolicy(allowed_domains=list(DEFAULT_ALLOWED_DOMAINS)),
        filesystem=FilesystemPolicy(
            allow_write=[str(home / p) for p in DEFAULT_WRITE_STATE] + ["/tmp", "/tmp/claude"],
            deny_read=[str(home / p) for p in DEFAULT_DENY_READ],
        ),
    )


def load_base_policy(path: Path | None, home: Path | None = None) -> SandboxPolicy:
    """Project override at ``path`` when it exists, otherwise the built-in defaults."""
    if path is None or not path.exists():
        return default_policy(home)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise SandboxPolicyError(f"Cannot read base sandbox policy {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise SandboxPolicyError(f"Base sandbox policy {path} must be a JSON object")
    return SandboxPolicy.from_dict(data)


@dataclass(slots=True)
class AgentSandboxContext:
    """Everything about one agent that shapes its policy."""

    task_id: str
    worktree_path: Path
    layout: HavenLayout
    log_dir: Path | None = None
    mcp_socket: Path | None = None
    external_mcp: bool = True
    extra_write_paths: list[str] = field(default_factory=list)

    @property
    def agent_paths(self) -> AgentPaths:
        return AgentPaths(self.layout.agent_dir(self.task_id))

    @property
    def sandbox_home(self) -> Path:
        return self.agent_paths.home

    @property
    def tmp_dir(self) -> Path:
        return self.agent_paths.tmp


class SandboxPolicyBuilder:
    def __init__(self, base: SandboxPolicy | None = None, *, platform: str | None = None) -> None:
        self.base = base or default_policy()
        self.platform = platform or sys.platform

    @classmethod
    def from_file(cls, path: Path | None, *, home: Path | None = None, platform: str | None = None) -> SandboxPolicyBuilder:
        return cls(load_base_policy(path, home), platform=platform)

    def build(self, ctx: AgentSandboxContext, *, strict: bool = True) -> SandboxPolicy:
        policy = self.base.copy()
        fs = policy.filesystem

        agent_paths = [str(ctx.worktree_path), str(ctx.log_dir or ctx.agent_paths.root)]
        if ctx.mcp_socket is not None:
            agent_paths.append(str(ctx.mcp_socket))
        if not ctx.external_mcp:
            agent_paths.append(str(ctx.layout.root))
        agent_paths.extend(ctx.extra_write_paths)

        if strict:
            # Replace, never merge: only private temp and tool state plus this agent's own paths.
            private = [str(ctx.tmp_dir)] + [str(ctx.sandbox_home / p) for p in TOOL_STATE_PATHS]
            fs.allow_write = _dedupe(private + agent_paths)
        else:
            fs.allow_write = _dedupe(fs.allow_write + agent_paths)

        fs.deny_read = _dedupe(
            fs.deny_read
            + self._siblings(ctx.layout.worktrees_dir, ctx.task_id)
            + self._siblings(ctx.layout.agents_dir, ctx.task_id)
            + [str(ctx.layout.artefacts_dir)]
        )

        if ctx.mcp_socket is not None:
            policy.network.allow_unix_sockets = _dedupe(policy.network.allow_unix_sockets + [str(ctx.mcp_socket)])
        if self.platform.startswith("linux"):
            # The wrapper's network namespace also blocks AF_UNIX creation unless relaxed.
            policy.network.allow_all_unix_sockets = True
        return policy

    def write(self, policy: SandboxPolicy, path: Path) -> Path:
        write_json_atomic(path, policy.to_dict())
        log.debug("Wrote sandbox policy %s", path)
        return path

    @staticmethod
    def _siblings(directory: Path, own: str) -> list[str]:
        if not directory.is_dir():
            return []
        return [str(child) for child in sorted(directory.iterdir()) if child.name != own]
