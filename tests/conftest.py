"""Global test fixtures for flotilla."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

from flotilla.paths import HavenLayout

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Flotilla Test",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Flotilla Test",
    "GIT_COMMITTER_EMAIL": "test@example.com",
}


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
        env={**os.environ, **GIT_ENV},
    )
    return result.stdout


def commit_file(repo: Path, rel: str, content: str, message: str | None = None) -> None:
    path = repo / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    git(repo, "add", rel)
    git(repo, "commit", "-q", "-m", message or f"update {rel}")


@pytest.fixture
def tmp_workdir(tmp_path: Path) -> Path:
    """Provide a temporary working directory for file operation tests."""
    return tmp_path


@pytest.fixture
def git_repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A git repository on ``main`` with one commit."""
    for key, value in GIT_ENV.items():
        monkeypatch.setenv(key, value)
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "commit.gpgsign", "false")
    commit_file(repo, "README.md", "hello\n", "initial")
    return repo


@pytest.fixture
def haven(tmp_path: Path) -> HavenLayout:
    return HavenLayout(root=tmp_path / "haven").ensure()
