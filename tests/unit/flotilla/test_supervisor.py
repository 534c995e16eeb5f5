"""Tests for flotilla.supervisor.process using real child processes."""

from __future__ import annotations

import json
import sys
import textwrap
from pathlib import Path

import pytest

from flotilla.errors import SpawnError
from flotilla.supervisor.process import ExitInfo, ProcessSupervisor, SpawnOptions
from flotilla.supervisor.stream import EventKind, StreamEvent

WORKER = textwrap.dedent(
    """
    import json, sys
    prompt = sys.stdin.read()
    print(json.dumps({"type": "system", "subtype": "init", "model": "fake", "tools": ["Bash"]}), flush=True)
    print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "got " + prompt}]}}), flush=True)
    print("not json at all", flush=True)
    print("warning: something", file=sys.stderr, flush=True)
    print(json.dumps({"type": "result", "subtype": "success", "num_turns": 2, "total_cost_usd": 0.5}), flush=True)
    sys.stdout.write('{"type": "user", "tool_use_result": "abc"}')
    """
)

SILENT_AFTER_HELLO = "import time; print('hello', flush=True); time.sleep(30)"

IGNORES_SIGTERM = textwrap.dedent(
    """
    import signal, time
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    print("ready", flush=True)
    time.sleep(30)
    """
)

CHATTY = "import time\nwhile True:\n    print('tick', flush=True)\n    time.sleep(0.1)"


def _opts(tmp_path: Path, script: str, **kwargs) -> SpawnOptions:
    return SpawnOptions(
        prompt=kwargs.pop("prompt", "do the thing"),
        cwd=tmp_path,
        log_base=tmp_path / "logs" / "run",
        command=[sys.executable, "-c", script],
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------


class TestBuildCommand:
    def test_default_worker_invocation(self, tmp_path: Path) -> None:
        opts = SpawnOptions(
            prompt="p",
            cwd=tmp_path,
            log_base=tmp_path / "run",
            mcp_config_path=tmp_path / "mcp.json",
            max_budget_usd=2.5,
            model="m",
            extra_args=["--foo"],
        )
        cmd = ProcessSupervisor().build_command(opts)
        assert cmd == [
            "claude",
            "--dangerously-skip-permissions",
            "--mcp-config",
            str(tmp_path / "mcp.json"),
            "--strict-mcp-config",
            "--no-session-persistence",
            "--verbose",
            "--output-format",
            "stream-json",
            "--max-budget-usd",
            "2.5",
            "--model",
            "m",
            "--foo",
            "-p",
        ]

    def test_safe_mode_and_unlimited_budget(self, tmp_path: Path) -> None:
        opts = SpawnOptions(prompt="p", cwd=tmp_path, log_base=tmp_path / "run", risky_mode=False)
        cmd = ProcessSupervisor().build_command(opts)
        assert "--dangerously-skip-permissions" not in cmd
        assert "--max-budget-usd" not in cmd
        assert "--mcp-config" not in cmd

    def test_sandbox_wraps_worker(self, tmp_path: Path) -> None:
        opts = SpawnOptions(prompt="p", cwd=tmp_path, log_base=tmp_path / "run", sandbox=True, policy_path=tmp_path / "srt.json")
        cmd = ProcessSupervisor(sandbox_binary="srt").build_command(opts)
        assert cmd[:4] == ["srt", "--settings", str(tmp_path / "srt.json"), "claude"]

    def test_sandbox_without_policy_fails(self, tmp_path: Path) -> None:
        opts = SpawnOptions(prompt="p", cwd=tmp_path, log_base=tmp_path / "run", sandbox=True)
        with pytest.raises(SpawnError):
            ProcessSupervisor().build_command(opts)

    def test_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CLAUDECODE", "1")
        opts = SpawnOptions(
            prompt="p",
            cwd=tmp_path,
            log_base=tmp_path / "run",
            sandbox_home=tmp_path / "home",
            tmp_dir=tmp_path / "tmp",
            debug=True,
            env={"EXTRA": "x"},
        )
        env = ProcessSupervisor().build_env(opts)
        assert "CLAUDECODE" not in env
        assert env["HOME"] == str(tmp_path / "home")
        assert env["TMPDIR"] == str(tmp_path / "tmp")
        assert env["SRT_DEBUG"] == "1"
        assert env["EXTRA"] == "x"


# ---------------------------------------------------------------------------
# Supervised execution
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_streams_and_logs_events(tmp_path: Path) -> None:
    events: list[StreamEvent] = []
    stderr: list[str] = []
    proc = await ProcessSupervisor().spawn(
        _opts(tmp_path, WORKER, prompt="hello", on_event=events.append, on_stderr=stderr.append)
    )
    info = await proc.wait()

    assert info.returncode == 0 and info.reason == "exit" and info.signal is None
    assert [e.kind for e in events] == [
        EventKind.INIT,
        EventKind.ASSISTANT,
        EventKind.RAW,
        EventKind.RESULT,
        EventKind.TOOL_RESULT,
    ]
    assert stderr == ["warning: something"]

    text = (tmp_path / "logs" / "run.log").read_text()
    assert "[INIT] model=fake tools=1" in text
    assert "[TEXT] got hello" in text
    assert "[RAW] not json at all" in text
    assert "[STDERR] warning: something" in text
    assert "[DONE] success turns=2 cost=$0.5000" in text
    assert "[RESULT] 3 bytes" in text
    assert "Exit code: 0, Signal: none" in text

    raw = (tmp_path / "logs" / "run.jsonlog").read_text()
    assert "not json at all\n" in raw
    assert '{"type": "user", "tool_use_result": "abc"}' in raw
    assert "warning: something\n" in raw
    assert "Exit code: 0, Signal: none" in raw


@pytest.mark.asyncio
async def test_watchdog_kills_silent_worker(tmp_path: Path) -> None:
    proc = await ProcessSupervisor(kill_grace_seconds=2).spawn(
        _opts(tmp_path, SILENT_AFTER_HELLO, watchdog_timeout=0.5, timeout=0)
    )
    info = await proc.wait()
    assert info.reason == "watchdog"
    assert info.returncode == -15 and info.signal == "SIGTERM"
    assert info.duration < 10
    text = (tmp_path / "logs" / "run.log").read_text()
    assert "[WATCHDOG]" in text
    assert "Signal: SIGTERM" in text


@pytest.mark.asyncio
async def test_watchdog_escalates_to_sigkill(tmp_path: Path) -> None:
    proc = await ProcessSupervisor(kill_grace_seconds=0.5).spawn(
        _opts(tmp_path, IGNORES_SIGTERM, watchdog_timeout=0.5, timeout=0)
    )
    info = await proc.wait()
    assert info.reason == "watchdog"
    assert info.returncode == -9 and info.signal == "SIGKILL"
    assert "[KILL]" in (tmp_path / "logs" / "run.log").read_text()


@pytest.mark.asyncio
async def test_absolute_timeout_despite_activity(tmp_path: Path) -> None:
    proc = await ProcessSupervisor(kill_grace_seconds=1).spawn(
        _opts(tmp_path, CHATTY, watchdog_timeout=0.5, timeout=1.5)
    )
    info = await proc.wait()
    assert info.reason == "timeout"
    assert info.returncode == -15
    assert 1.0 <= info.duration < 10


@pytest.mark.asyncio
async def test_terminate(tmp_path: Path) -> None:
    proc = await ProcessSupervisor(kill_grace_seconds=1).spawn(_opts(tmp_path, CHATTY, watchdog_timeout=0, timeout=0))
    info = await proc.terminate()
    assert info.reason == "terminated"
    assert info.killed and not info.success


@pytest.mark.asyncio
async def test_exit_callbacks_run_once_after_credential_cleanup(tmp_path: Path) -> None:
    real = tmp_path / "real"
    (real / ".claude").mkdir(parents=True)
    (real / ".claude" / ".credentials.json").write_text("{}")
    sandbox_home = tmp_path / "sandbox-home"
    seen: list[tuple[ExitInfo, bool]] = []

    def on_exit(info: ExitInfo) -> None:
        seen.append((info, (sandbox_home / ".claude" / ".credentials.json").exists()))

    def broken(info: ExitInfo) -> None:
        raise RuntimeError("boom")

    proc = await ProcessSupervisor(real_home=real).spawn(
        _opts(tmp_path, "import sys; sys.exit(4)", sandbox_home=sandbox_home)
    )
    proc.add_exit_callback(broken)
    proc.add_exit_callback(on_exit)
    info = await proc.wait()
    await proc.wait()

    assert info.returncode == 4 and info.reason == "exit"
    assert len(seen) == 1
    assert seen[0][1] is False

    late: list[ExitInfo] = []
    proc.add_exit_callback(late.append)
    assert late == [info]


@pytest.mark.asyncio
async def test_prompt_goes_to_stdin(tmp_path: Path) -> None:
    script = "import sys, json; print(json.dumps({'type': 'result', 'subtype': sys.stdin.read()}))"
    proc = await ProcessSupervisor().spawn(_opts(tmp_path, script, prompt="via-stdin"))
    await proc.wait()
    assert "[DONE] via-stdin" in (tmp_path / "logs" / "run.log").read_text()


@pytest.mark.asyncio
async def test_missing_worker_binary(tmp_path: Path) -> None:
    opts = SpawnOptions(prompt="p", cwd=tmp_path, log_base=tmp_path / "logs" / "run", command=["no-such-worker-xyz"])
    with pytest.raises(SpawnError, match="Install it or add it to PATH"):
        await ProcessSupervisor().spawn(opts)
    assert "Spawn failed" in (tmp_path / "logs" / "run.log").read_text()


@pytest.mark.asyncio
async def test_run_log_paths_rotate_between_runs(tmp_path: Path) -> None:
    for _ in range(2):
        proc = await ProcessSupervisor().spawn(_opts(tmp_path, "print('{}')"))
        await proc.wait()
    assert (tmp_path / "logs" / "run.log.1").exists()
    assert (tmp_path / "logs" / "run.jsonlog.1").exists()


@pytest.mark.asyncio
async def test_unrunnable_worker_cleans_up_credentials(tmp_path: Path) -> None:
    real = tmp_path / "real"
    (real / ".claude").mkdir(parents=True)
    (real / ".claude" / ".credentials.json").write_text("{}")
    worker = tmp_path / "not-a-program"
    worker.write_bytes(b"\x00\x01 not an executable format\n")
    worker.chmod(0o755)
    sandbox_home = tmp_path / "sandbox-home"

    opts = SpawnOptions(
        prompt="p",
        cwd=tmp_path,
        log_base=tmp_path / "logs" / "run",
        command=[str(worker)],
        sandbox_home=sandbox_home,
    )
    with pytest.raises(SpawnError) as exc_info:
        await ProcessSupervisor(real_home=real).spawn(opts)

    assert exc_info.value.remediation
    assert not (sandbox_home / ".claude" / ".credentials.json").exists()
    assert "Spawn failed" in (tmp_path / "logs" / "run.log").read_text()
    assert "Spawn failed" in (tmp_path / "logs" / "run.jsonlog").read_text()


@pytest.mark.asyncio
async def test_unwritable_log_dir_is_a_spawn_error(tmp_path: Path) -> None:
    real = tmp_path / "real"
    (real / ".claude").mkdir(parents=True)
    (real / ".claude" / ".credentials.json").write_text("{}")
    (tmp_path / "logs").write_text("a file where the log directory should be")
    sandbox_home = tmp_path / "sandbox-home"

    opts = SpawnOptions(
        prompt="p",
        cwd=tmp_path,
        log_base=tmp_path / "logs" / "run",
        command=[sys.executable, "-c", "pass"],
        sandbox_home=sandbox_home,
    )
    with pytest.raises(SpawnError):
        await ProcessSupervisor(real_home=real).spawn(opts)
    assert not (sandbox_home / ".claude" / ".credentials.json").exists()
