"""One agent run end to end: claim, worktree, bridge, policy, supervised spawn.

Status moves ``spawned`` -> ``running`` on the worker's init event, then to
``completed``, ``failed`` or ``killed`` when it exits. The claim is released
and any bridge torn down on exit; if anything fails before the worker is
running, both are undone before the error propagates.

Store writes run on worker threads. Writes for one run are applied in
submission order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from flotilla.bridge.connect import BridgeConnection
from flotilla.engine import Engine
from flotilla.errors import ClaimConflictError, FlotillaError, WorktreeError
from flotilla.paths import AgentPaths, parse_task_num
from flotilla.protocol.io import utc_now_iso
from flotilla.sandbox.policy import AgentSandboxContext
from flotilla.store.agents import AgentRecord, AgentStatus, WorktreeRef
from flotilla.supervisor.process import ExitInfo, SpawnOptions, SupervisedProcess
from flotilla.supervisor.stream import EventKind, StreamEvent

log = logging.getLogger(__name__)


class RecordWriter:
    """Runs blocking store writes off the event loop, one at a time, in order."""

    def __init__(self) -> None:
        self._tail: asyncio.Task[Any] | None = None

    def submit(self, fn: Callable[[], Any]) -> asyncio.Task[Any]:
        previous = self._tail

        async def step() -> Any:
            if previous is not None:
                await asyncio.gather(previous, return_exceptions=True)
            return await asyncio.to_thread(fn)

        task = asyncio.get_running_loop().create_task(step())
        self._tail = task
        return task

    async def drain(self) -> None:
        while self._tail is not None:
            tail = self._tail
            await asyncio.gather(tail, return_exceptions=True)
            if self._tail is tail:
                return


@dataclass(slots=True)
class AgentRun:
    task_id: str
    record: AgentRecord
    process: SupervisedProcess
    connection: BridgeConnection | None = None
    run_id: str | None = None
    writer: RecordWriter = field(default_factory=RecordWriter, repr=False)

    async def wait(self) -> ExitInfo:
        info = await self.process.wait()
        await self.writer.drain()
        if self.connection is not None:
            await self.connection.aclose()
        return info


class AgentSpawner:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    async def spawn(
        self,
        task_id: str,
        prompt: str,
        *,
        operation: str = "agent",
        command: list[str] | None = None,
        sandbox: bool | None = None,
        base_branch: str | None = None,
    ) -> AgentRun:
        task_num = parse_task_num(task_id)
        if task_num is None:
            raise ValueError(f"Invalid task id: {task_id!r}")
        cfg = self.engine.config
        sandbox = cfg.agent.sandbox if sandbox is None else sandbox

        claim = self.engine.claims.claim(task_id, operation)
        if claim.already_claimed:
            raise ClaimConflictError(task_id, claim.marker)

        connection: BridgeConnection | None = None
        writer = RecordWriter()
        try:
            worktree = self._prepare_worktree(task_id, base_branch)
            cwd = Path(worktree.path) if worktree else Path(cfg.project_root)
            paths = AgentPaths(self.engine.layout.agent_dir(task_id))
            paths.root.mkdir(parents=True, exist_ok=True)

            if sandbox or not self.engine.bridge.external or self.engine.service.status().running:
                connection = await self.engine.bridge.establish(
                    paths, project_root=Path(cfg.project_root), task_id=task_id, sandboxed=sandbox
                )

            policy_path: Path | None = None
            if sandbox:
                builder = self.engine.policy_builder()
                ctx = AgentSandboxContext(
                    task_id=task_id,
                    worktree_path=cwd,
                    layout=self.engine.layout,
                    log_dir=paths.root,
                    mcp_socket=connection.socket if connection else None,
                    external_mcp=self.engine.bridge.external,
                    extra_write_paths=list(cfg.sandbox.extra_write_paths),
                )
                policy_path = builder.write(builder.build(ctx, strict=cfg.sandbox.strict), paths.policy_file)

            record = AgentRecord(
                task_num=task_num,
                task_id=task_id,
                worktree=worktree,
                log_file=str(paths.log_file),
                json_log_file=str(paths.json_log_file),
                sandbox_config_path=str(policy_path) if policy_path else None,
                mcp_config_path=str(connection.config_path) if connection else None,
                mcp_socket=str(connection.socket) if connection and connection.socket else None,
                mcp_port=connection.port if connection else None,
            )
            opts = SpawnOptions(
                prompt=prompt,
                cwd=cwd,
                log_base=paths.log_base,
                command=command,
                sandbox=sandbox,
                policy_path=policy_path,
                risky_mode=cfg.agent.risky_mode,
                mcp_config_path=connection.config_path if connection else None,
                max_budget_usd=cfg.agent.max_budget_usd,
                model=cfg.agent.model,
                extra_args=list(cfg.agent.extra_args),
                sandbox_home=paths.home if sandbox else None,
                tmp_dir=paths.tmp if sandbox else None,
                watchdog_timeout=cfg.agent.watchdog_timeout,
                timeout=cfg.agent.timeout,
                debug=cfg.agent.debug_sandbox,
                on_event=self._on_event(task_num, writer),
            )
            process = await self.engine.supervisor.spawn(opts)
        except BaseException:
            if connection is not None:
                await connection.aclose()
            self.engine.claims.release(task_id)
            raise

        record.pid = process.pid
        run = AgentRun(task_id, record, process, connection, writer=writer)

        def record_start() -> None:
            self.engine.agents.upsert(record)
            run.run_id = self.engine.runs.start(task_id, operation, process.pid).get("_id")

        started = writer.submit(record_start)
        process.add_exit_callback(self._on_exit(run))
        try:
            await started
        except FlotillaError:
            await process.terminate()
            await run.wait()
            raise
        return run

    def _prepare_worktree(self, task_id: str, base_branch: str | None) -> WorktreeRef | None:
        if not self.engine.config.agent.use_worktrees:
            return None
        manager = self.engine.worktrees
        if manager.exists(task_id):
            log.info("Reusing worktree for %s", task_id)
            return WorktreeRef(str(manager.worktree_path(task_id)), manager.branch_name(task_id))
        result = manager.create(task_id, base_branch)
        if not result.success:
            raise WorktreeError(result.error or f"Could not create worktree for {task_id}")
        return WorktreeRef(str(result.path), result.branch or "", result.base_branch or "")

    def _on_event(self, task_num: int, writer: RecordWriter) -> Callable[[StreamEvent], None]:
        def mark_running() -> None:
            try:
                self.engine.agents.update_status(task_num, AgentStatus.RUNNING)
            except FlotillaError as exc:
                log.error("Could not mark task %d running: %s", task_num, exc)

        def handle(event: StreamEvent) -> None:
            if event.kind == EventKind.INIT:
                writer.submit(mark_running)

        return handle

    def _on_exit(self, run: AgentRun) -> Callable[[ExitInfo], None]:
        def handle(info: ExitInfo) -> None:
            if run.connection is not None:
                run.connection.cleanup()
            if info.killed:
                status = AgentStatus.KILLED
            elif info.success:
                status = AgentStatus.COMPLETED
            else:
                status = AgentStatus.FAILED
            ended_at = utc_now_iso()

            def record_exit() -> None:
                try:
                    self.engine.agents.update_status(
                        run.record.task_num,
                        status,
                        ended_at=ended_at,
                        exit_code=info.returncode,
                        exit_signal=info.signal,
                        kill_reason=info.reason if info.killed else None,
                    )
                    if run.run_id:
                        self.engine.runs.finish(run.run_id, status=str(status), exit_code=info.returncode, reason=info.reason)
                except FlotillaError as exc:
                    log.error("Could not record exit of %s: %s", run.task_id, exc)
                finally:
                    self.engine.claims.release(run.task_id)

            run.writer.submit(record_exit)

        return handle
