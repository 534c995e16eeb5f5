"""Spawn and supervise one worker process.

The worker reads its prompt from stdin and writes newline-delimited JSON
events to stdout. The supervisor mirrors stdout and stderr byte-for-byte into
the raw log, condenses both into the readable log, and enforces two kill
policies:

* watchdog: no stdout/stderr activity for ``watchdog_timeout`` seconds,
* timeout: ``timeout`` seconds of wall-clock time regardless of activity.

Either policy sends SIGTERM to the worker's process group and escalates to
SIGKILL after ``kill_grace_seconds``. Cleanup (credential removal, log
footer, exit callbacks) runs once, when the process has actually exited.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from flotilla.errors import SpawnError
from flotilla.supervisor.credentials import SandboxHome
from flotilla.supervisor.logs import DualLog
from flotilla.supervisor.stream import StreamEvent, parse_stream_line

log = logging.getLogger(__name__)

# Env vars that make a nested worker refuse to start ("cannot launch inside
# another session") when the engine itself runs under an agent session.
STRIP_ENV_VARS = {
    "CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "CLAUDE_REPL",
    "CLAUDE_CODE_PACKAGE_DIR",
}

CHUNK_SIZE = 65536
DRAIN_TIMEOUT = 2.0


@dataclass(slots=True)
class SpawnOptions:
    prompt: str
    cwd: Path
    log_base: Path  # writes <log_base>.log and <log_base>.jsonlog
    command: list[str] | None = None  # explicit worker argv instead of the default invocation
    sandbox: bool = False
    policy_path: Path | None = None
    risky_mode: bool = True
    mcp_config_path: Path | None = None
    no_session_persistence: bool = True
    max_budget_usd: float = -1
    model: str = ""
    extra_args: list[str] = field(default_factory=list)
    sandbox_home: Path | None = None
    tmp_dir: Path | None = None
    watchdog_timeout: float = 300.0  # 0 disables
    timeout: float = 3600.0  # 0 disables
    debug: bool = False
    env: dict[str, str] = field(default_factory=dict)
    on_event: Callable[[StreamEvent], None] | None = None
    on_stderr: Callable[[str], None] | None = None


@dataclass(slots=True)
class ExitInfo:
    returncode: int | None
    signal: str | None
    reason: str  # exit | watchdog | timeout | terminated
    duration: float

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def killed(self) -> bool:
        return self.reason != "exit"


def _signal_name(returncode: int | None) -> str | None:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return str(-returncode)


def _remediation(exc: OSError) -> str:
    if isinstance(exc, (FileNotFoundError, PermissionError)):
        return "Install it or add it to PATH."
    return "Check that the worker command is a runnable executable and the agent directory is writable."


class ProcessSupervisor:
    def __init__(
        self,
        *,
        worker_binary: str = "claude",
        sandbox_binary: str = "srt",
        kill_grace_seconds: float = 5.0,
        real_home: Path | None = None,
    ) -> None:
        self.worker_binary = worker_binary
        self.sandbox_binary = sandbox_binary
        self.kill_grace_seconds = kill_grace_seconds
        self.real_home = real_home

    def worker_args(self, opts: SpawnOptions) -> list[str]:
        args: list[str] = []
        if opts.risky_mode:
            args.append("--dangerously-skip-permissions")
        if opts.mcp_config_path is not None:
            args += ["--mcp-config", str(opts.mcp_config_path), "--strict-mcp-config"]
        if opts.no_session_persistence:
            args.append("--no-session-persistence")
        args += ["--verbose", "--output-format", "stream-json"]
        if opts.max_budget_usd > 0:
            args += ["--max-budget-usd", str(opts.max_budget_usd)]
        if opts.model:
            args += ["--model", opts.model]
        args += opts.extra_args
        args.append("-p")
        return args

    def build_command(self, opts: SpawnOptions) -> list[str]:
        worker = list(opts.command) if opts.command else [self.worker_binary, *self.worker_args(opts)]
        if not opts.sandbox:
            return worker
        if opts.policy_path is None:
            raise SpawnError("Sandboxed spawn requires a policy file", remediation="Build one with SandboxPolicyBuilder")
        return [self.sandbox_binary, "--settings", str(opts.policy_path), *worker]

    def build_env(self, opts: SpawnOptions) -> dict[str, str]:
        env = {k: v for k, v in os.environ.items() if k not in STRIP_ENV_VARS}
        env.update(opts.env)
        if opts.debug:
            env["SRT_DEBUG"] = "1"
        if opts.sandbox_home is not None:
            env["HOME"] = str(opts.sandbox_home)
        if opts.tmp_dir is not None:
            env["TMPDIR"] = str(opts.tmp_dir)
        return env

    async def spawn(self, opts: SpawnOptions) -> SupervisedProcess:
        cmd = self.build_command(opts)
        env = self.build_env(opts)

        home = SandboxHome(opts.sandbox_home, self.real_home) if opts.sandbox_home is not None else None
        if home is not None:
            home.prepare()

        logs = DualLog(opts.log_base)
        try:
            if opts.tmp_dir is not None:
                opts.tmp_dir.mkdir(parents=True, exist_ok=True)
            logs.open(
                {
                    "Cwd": opts.cwd,
                    "Command": " ".join(cmd),
                    "Sandbox": opts.sandbox,
                    "Policy": opts.policy_path or "-",
                    "MCP config": opts.mcp_config_path or "-",
                }
            )
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(opts.cwd),
                env=env,
                start_new_session=True,
            )
        except BaseException as exc:
            if home is not None:
                home.cleanup()
            try:
                logs.close(f"Spawn failed: {exc!r}")
            except OSError as close_exc:
                log.debug("Could not finish log %s: %s", logs.log_path, close_exc)
            if not isinstance(exc, OSError):
                raise
            raise SpawnError(f"'{cmd[0]}' could not be started ({exc})", remediation=_remediation(exc)) from exc

        log.info("Spawned %s (pid %d) in %s", cmd[0], process.pid, opts.cwd)
        supervised = SupervisedProcess(process, opts, logs, home, grace=self.kill_grace_seconds)
        supervised.start()
        return supervised


class SupervisedProcess:
    def __init__(
        self,
        process: asyncio.subprocess.Process,
        opts: SpawnOptions,
        logs: DualLog,
        home: SandboxHome | None,
        *,
        grace: float,
    ) -> None:
        self.process = process
        self.opts = opts
        self.logs = logs
        self.home = home
        self.grace = grace
        self.kill_reason: str | None = None
        self.exit_info: ExitInfo | None = None
        self._loop = asyncio.get_running_loop()
        self._started = time.monotonic()
        self._last_activity = self._started
        self._watchdog: asyncio.TimerHandle | None = None
        self._deadline: asyncio.TimerHandle | None = None
        self._escalation: asyncio.TimerHandle | None = None
        self._done: asyncio.Future[ExitInfo] = self._loop.create_future()
        self._callbacks: list[Callable[[ExitInfo], None]] = []
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def start(self) -> None:
        self._arm_watchdog()
        if self.opts.timeout > 0:
            self._deadline = self._loop.call_later(self.opts.timeout, self._timeout_fired)
        pumps = [
            asyncio.create_task(self._feed_prompt()),
            asyncio.create_task(self._pump_stdout()),
            asyncio.create_task(self._pump_stderr()),
        ]
        self._tasks = [*pumps, asyncio.create_task(self._monitor(pumps))]

    def add_exit_callback(self, callback: Callable[[ExitInfo], None]) -> None:
        if self.exit_info is not None:
            self._run_callback(callback, self.exit_info)
        else:
            self._callbacks.append(callback)

    async def wait(self) -> ExitInfo:
        return await asyncio.shield(self._done)

    async def terminate(self, reason: str = "terminated") -> ExitInfo:
        self._kill(reason)
        return await self.wait()

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def _feed_prompt(self) -> None:
        stdin = self.process.stdin
        if stdin is None:
            return
        try:
            stdin.write(self.opts.prompt.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            log.debug("Worker %d closed stdin early: %s", self.pid, exc)
        finally:
            stdin.close()

    async def _pump_stdout(self) -> None:
        stream = self.process.stdout
        if stream is None:
            return
        pending = b""
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break
            self._activity()
            self.logs.write_raw(chunk)
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for line in lines:
                self._handle_line(line)
        if pending:
            self._handle_line(pending)

    async def _pump_stderr(self) -> None:
        stream = self.process.stderr
        if stream is None:
            return
        pending = b""
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break
            self._activity()
            self.logs.write_raw(chunk)
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for line in lines:
                self._handle_stderr(line)
        if pending:
            self._handle_stderr(pending)

    def _handle_stderr(self, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").rstrip("\r")
        if not text.strip():
            return
        self.logs.write_line(f"[STDERR] {text}")
        if self.opts.on_stderr is not None:
            try:
                self.opts.on_stderr(text)
            except Exception:
                log.exception("stderr callback failed")

    def _handle_line(self, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace")
        if not text.strip():
            return
        event = parse_stream_line(text)
        for line in event.lines:
            self.logs.write_line(line)
        if self.opts.on_event is not None:
            try:
                self.opts.on_event(event)
            except Exception:
                log.exception("event callback failed")

    # ------------------------------------------------------------------
    # Kill policies
    # ------------------------------------------------------------------

    def _activity(self) -> None:
        self._last_activity = time.monotonic()
        self._arm_watchdog()

    def _arm_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
        if self.opts.watchdog_timeout > 0 and self.kill_reason is None:
            self._watchdog = self._loop.call_later(self.opts.watchdog_timeout, self._watchdog_fired)

    def _watchdog_fired(self) -> None:
        silent = time.monotonic() - self._last_activity
        log.warning("Worker %d silent for %.1fs, terminating (watchdog)", self.pid, silent)
        self.logs.write_line(f"[WATCHDOG] no output for {silent:.1f}s, sending SIGTERM")
        self._kill("watchdog")

    def _timeout_fired(self) -> None:
        elapsed = time.monotonic() - self._started
        log.warning("Worker %d ran %.1fs, terminating (timeout)", self.pid, elapsed)
        self.logs.write_line(f"[TIMEOUT] ran for {elapsed:.1f}s, sending SIGTERM")
        self._kill("timeout")

    def _kill(self, reason: str) -> None:
        if self.process.returncode is not None or self.kill_reason is not None:
            return
        self.kill_reason = reason
        if self._watchdog is not None:
            self._watchdog.cancel()
        self._signal(signal.SIGTERM)
        self._escalation = self._loop.call_later(self.grace, self._escalate)

    def _escalate(self) -> None:
        if self.process.returncode is not None:
            return
        log.warning("Worker %d ignored SIGTERM for %.1fs, sending SIGKILL", self.pid, self.grace)
        self.logs.write_line("[KILL] grace period elapsed, sending SIGKILL")
        self._signal(signal.SIGKILL)

    def _signal(self, sig: signal.Signals) -> None:
        try:
            os.killpg(self.process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self.process.send_signal(sig)

    # ------------------------------------------------------------------
    # Exit
    # ------------------------------------------------------------------

    async def _monitor(self, pumps: list[asyncio.Task[None]]) -> None:
        returncode = await self.process.wait()
        _, still_running = await asyncio.wait(pumps, timeout=DRAIN_TIMEOUT)
        for task in still_running:
            task.cancel()
        self._finalize(returncode)

    def _finalize(self, returncode: int) -> None:
        for handle in (self._watchdog, self._deadline, self._escalation):
            if handle is not None:
                handle.cancel()
        if self.home is not None:
            self.home.cleanup()

        info = ExitInfo(
            returncode=returncode,
            signal=_signal_name(returncode),
            reason=self.kill_reason or "exit",
            duration=time.monotonic() - self._started,
        )
        self.exit_info = info
        self.logs.close(f"Exit code: {returncode}, Signal: {info.signal or 'none'}")
        log.info("Worker %d exited: code=%s signal=%s reason=%s", self.pid, returncode, info.signal, info.reason)

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run_callback(callback, info)
        if not self._done.done():
            self._done.set_result(info)

    @staticmethod
    def _run_callback(callback: Callable[[ExitInfo], None], info: ExitInfo) -> None:
        try:
            callback(info)
        except Exception:
            log.exception("exit callback failed")
