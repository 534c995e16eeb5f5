"""Configuration schema for flotilla YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class AgentConfig:
    use_worktrees: bool = True
    sandbox: bool = False
    risky_mode: bool = True  # pass --dangerously-skip-permissions to the worker
    timeout: int = 3600  # absolute wall-clock limit in seconds, 0 disables
    watchdog_timeout: int = 300  # output silence window in seconds, 0 disables
    kill_grace_seconds: float = 5.0
    max_budget_usd: float = -1  # -1 = unlimited
    model: str = ""  # empty string = use the worker's own default model
    worker_binary: str = "claude"
    sandbox_binary: str = "srt"
    debug_sandbox: bool = False
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GitConfig:
    main_branch: str = "main"
    branch_prefix: str = "task/"


@dataclass(slots=True)
class StoreConfig:
    lock_timeout_seconds: float = 5.0
    lock_stale_seconds: float = 30.0


@dataclass(slots=True)
class SandboxConfig:
    base_policy: str = ""  # empty = <haven>/srt-settings.json when present, else built-in defaults
    strict: bool = True
    extra_write_paths: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BridgeConfig:
    socat_binary: str = "socat"
    startup_timeout_seconds: float = 2.0
    server_command: list[str] = field(default_factory=lambda: ["flotilla-conductor"])
    start_hint: str = "flotilla-conductor start"
    external: bool = True  # False = spawn the service per agent (internal config shape)


@dataclass(slots=True)
class PathsConfig:
    haven_dir: str = ""  # empty = ~/.flotilla/havens/<project-hash>
    worktrees_dir: str = ""  # empty = <haven>/worktrees


@dataclass(slots=True)
class IdsConfig:
    task_digits: int = 3


@dataclass(slots=True)
class FlotillaConfig:
    project_root: str = "."
    agent: AgentConfig = field(default_factory=AgentConfig)
    git: GitConfig = field(default_factory=GitConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    ids: IdsConfig = field(default_factory=IdsConfig)
