"""Wiring of the engine's components from one config object."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from flotilla.bridge.connect import Bridge
from flotilla.bridge.service import CoordinationService
from flotilla.bridge.socat import SocketBridge
from flotilla.config.loader import resolve_layout
from flotilla.config.schema import FlotillaConfig
from flotilla.coordinator.claims import ClaimRegistry
from flotilla.paths import HavenLayout
from flotilla.sandbox.policy import SandboxPolicyBuilder
from flotilla.store.agents import AgentRepository, RunRepository
from flotilla.supervisor.process import ProcessSupervisor
from flotilla.workspace.conflicts import ConflictDetector
from flotilla.workspace.worktree import WorktreeManager


@dataclass(slots=True)
class Engine:
    config: FlotillaConfig
    layout: HavenLayout
    claims: ClaimRegistry
    worktrees: WorktreeManager
    agents: AgentRepository
    runs: RunRepository
    service: CoordinationService
    bridge: Bridge
    supervisor: ProcessSupervisor

    @classmethod
    def from_config(cls, config: FlotillaConfig) -> Engine:
        layout = resolve_layout(config).ensure()
        store_opts = {
            "lock_timeout": config.store.lock_timeout_seconds,
            "lock_stale": config.store.lock_stale_seconds,
        }
        service = CoordinationService(layout, start_hint=config.bridge.start_hint)
        return cls(
            config=config,
            layout=layout,
            claims=ClaimRegistry(layout.agents_dir),
            worktrees=WorktreeManager(
                Path(config.project_root),
                layout.worktrees_dir,
                main_branch=config.git.main_branch,
                branch_prefix=config.git.branch_prefix,
            ),
            agents=AgentRepository(layout.db_dir, **store_opts),
            runs=RunRepository(layout.db_dir, **store_opts),
            service=service,
            bridge=Bridge(
                service,
                socket_bridge=SocketBridge(config.bridge.socat_binary),
                server_command=config.bridge.server_command,
                external=config.bridge.external,
                startup_timeout=config.bridge.startup_timeout_seconds,
            ),
            supervisor=ProcessSupervisor(
                worker_binary=config.agent.worker_binary,
                sandbox_binary=config.agent.sandbox_binary,
                kill_grace_seconds=config.agent.kill_grace_seconds,
            ),
        )

    def policy_builder(self) -> SandboxPolicyBuilder:
        base = Path(self.config.sandbox.base_policy).expanduser() if self.config.sandbox.base_policy else self.layout.base_policy
        return SandboxPolicyBuilder.from_file(base)

    def conflict_detector(self) -> ConflictDetector:
        return ConflictDetector(self.worktrees, self.agents, task_digits=self.config.ids.task_digits)
