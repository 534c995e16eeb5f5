"""Tests for the flotilla CLI."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog
from click.testing import CliRunner

from flotilla.cli import main


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    level = root.level
    yield
    root.handlers[:] = [h for h in root.handlers if not isinstance(h.formatter, structlog.stdlib.ProcessorFormatter)]
    root.setLevel(level)


@pytest.fixture
def invoke(git_repo: Path, tmp_path: Path):
    runner = CliRunner()
    base = ["--project-root", str(git_repo), "--set", f"paths.haven_dir={tmp_path / 'haven'}"]

    def _invoke(*args: str):
        return runner.invoke(main, [*base, *args])

    return _invoke


class TestClaims:
    def test_claim_and_release(self, invoke) -> None:
        first = invoke("claim", "T001")
        assert first.exit_code == 0, first.output
        assert json.loads(first.stdout) == {"success": True}

        second = invoke("claim", "T001")
        assert json.loads(second.stdout) == {"success": True, "alreadyClaimed": True}

        listed = invoke("claims")
        assert "T001" in listed.output and "manual" in listed.output

        assert json.loads(invoke("release", "T001").stdout) == {"success": True}
        assert json.loads(invoke("release", "T001").stdout) == {"success": True, "notClaimed": True}


class TestWorktrees:
    def test_create_list_remove(self, invoke, tmp_path: Path) -> None:
        created = invoke("worktree", "create", "T010")
        assert created.exit_code == 0, created.output
        data = json.loads(created.stdout)
        assert data["branch"] == "task/T010"
        assert data["path"] == str(tmp_path / "haven" / "worktrees" / "T010")

        again = invoke("worktree", "create", "T010")
        assert again.exit_code == 1
        assert json.loads(again.stdout)["success"] is False

        assert "T010" in invoke("worktree", "list").output

        status = json.loads(invoke("worktree", "status", "T010").stdout)
        assert status["exists"] is True and status["clean"] is True

        removed = invoke("worktree", "remove", "T010")
        assert removed.exit_code == 0, removed.output
        assert invoke("worktree", "list").stdout.strip() == ""


def test_conflicts_empty(invoke) -> None:
    result = invoke("conflicts")
    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout)
    assert data["agents"] == [] and data["suggestedOrder"] == []


def test_sandbox_policy(invoke, tmp_path: Path) -> None:
    result = invoke("sandbox", "policy", "T001")
    assert result.exit_code == 0, result.output
    policy = json.loads(result.stdout)
    allow = policy["filesystem"]["allowWrite"]
    assert str(tmp_path / "haven" / "worktrees" / "T001") in allow


def test_service_not_running(invoke) -> None:
    result = invoke("service", "status")
    assert result.exit_code == 1
    assert "not running" in result.output


def test_agent_list_empty(invoke) -> None:
    result = invoke("agent", "list")
    assert result.exit_code == 0
    assert "No agents" in result.output


def test_unknown_config_key(invoke) -> None:
    result = invoke("--set", "agent.nope=1", "agent", "list")
    assert result.exit_code != 0
    assert "Unknown config key" in result.output


def test_bad_override_syntax(invoke) -> None:
    result = invoke("--set", "agent.sandbox", "agent", "list")
    assert result.exit_code == 2
