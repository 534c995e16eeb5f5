"""Tests for flotilla.coordinator.claims."""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import yaml

from flotilla.coordinator.claims import ClaimRegistry


def test_claim_creates_marker(tmp_path: Path) -> None:
    registry = ClaimRegistry(tmp_path / "agents")
    result = registry.claim("T001", "implement")
    assert result.to_dict() == {"success": True}

    marker = yaml.safe_load((tmp_path / "agents" / "T001" / "run.yaml").read_text())
    assert marker["taskId"] == "T001"
    assert marker["operation"] == "implement"
    assert marker["pid"] == os.getpid()
    assert isinstance(marker["started_at"], str)


def test_second_claim_reports_already_claimed_and_keeps_marker(tmp_path: Path) -> None:
    registry = ClaimRegistry(tmp_path / "agents")
    registry.claim("T001", "implement", pid=111)
    before = registry.read_marker("T001")

    again = registry.claim("T001", "review", pid=222)
    assert again.to_dict() == {"success": True, "alreadyClaimed": True}
    assert again.marker == before
    assert registry.read_marker("T001") == before


def test_release_of_unclaimed_task_creates_nothing(tmp_path: Path) -> None:
    registry = ClaimRegistry(tmp_path / "agents")
    result = registry.release("T404")
    assert result.to_dict() == {"success": True, "notClaimed": True}
    assert not (tmp_path / "agents" / "T404").exists()


def test_release_removes_marker(tmp_path: Path) -> None:
    registry = ClaimRegistry(tmp_path / "agents")
    registry.claim("T001", "implement")
    assert registry.is_claimed("T001")
    assert registry.release("T001").to_dict() == {"success": True}
    assert not registry.is_claimed("T001")
    assert registry.claim("T001", "implement").to_dict() == {"success": True}


def test_racing_claims_have_one_winner(tmp_path: Path) -> None:
    registry = ClaimRegistry(tmp_path / "agents")
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda i: registry.claim("T009", f"op{i}", pid=1000 + i), range(8)))
    assert sum(not r.already_claimed for r in results) == 1


def test_list_claims_and_holder_liveness(tmp_path: Path) -> None:
    registry = ClaimRegistry(tmp_path / "agents")
    registry.claim("T001", "a")
    registry.claim("T002", "b", pid=2**22 + 12345)
    (tmp_path / "agents" / "T003").mkdir()

    assert [c["taskId"] for c in registry.list_claims()] == ["T001", "T002"]
    assert registry.holder_alive("T001") is True
    assert registry.holder_alive("T002") is False
    assert registry.holder_alive("T003") is None
    # Liveness is informational only: a dead holder still blocks.
    assert registry.claim("T002", "c").already_claimed
