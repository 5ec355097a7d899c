import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from syzygy.stages.locks import CorruptLockError, LockManager


def _artifact(tmp_path: Path, name: str = "dark-mode-spec.md") -> Path:
    path = tmp_path / name
    path.write_text("---\ntype: spec\n---\n", encoding="utf-8")
    return path


def _dead_pid() -> int:
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    return process.pid


def test_claim_creates_single_lock_with_owner(tmp_path: Path) -> None:
    locks = LockManager()
    artifact = _artifact(tmp_path)

    assert locks.claim(artifact, "architect") is True

    lock_file = tmp_path / "dark-mode-spec.md.lock"
    payload = json.loads(lock_file.read_text(encoding="utf-8"))
    assert payload["agentId"] == "architect"
    assert payload["pid"] == os.getpid()
    assert payload["claimedAt"].endswith("Z")
    assert [entry.name for entry in tmp_path.iterdir() if entry.suffix == ".lock"] == [
        "dark-mode-spec.md.lock"
    ]


def test_second_claim_is_refused_and_lock_untouched(tmp_path: Path) -> None:
    locks = LockManager()
    artifact = _artifact(tmp_path)
    assert locks.claim(artifact, "developer-1")
    before = locks.lock_path(artifact).read_text(encoding="utf-8")

    assert locks.claim(artifact, "developer-2") is False

    assert locks.lock_path(artifact).read_text(encoding="utf-8") == before
    info = locks.info(artifact)
    assert info is not None and info.agent_id == "developer-1"


def test_release_is_idempotent_and_allows_reclaim(tmp_path: Path) -> None:
    locks = LockManager()
    artifact = _artifact(tmp_path)
    locks.claim(artifact, "developer-1")

    locks.release(artifact)
    locks.release(artifact)

    assert locks.is_locked(artifact) is False
    assert locks.info(artifact) is None
    assert locks.claim(artifact, "developer-2") is True


def test_reap_stale_removes_dead_owner_and_keeps_live_owner(tmp_path: Path) -> None:
    locks = LockManager()
    dead = _artifact(tmp_path, "dead.md")
    live = _artifact(tmp_path, "live.md")
    unlocked = _artifact(tmp_path, "free.md")
    stale = {"agentId": "developer-1", "claimedAt": "2024-01-01T00:00:00Z", "pid": _dead_pid()}
    locks.lock_path(dead).write_text(json.dumps(stale), encoding="utf-8")
    locks.claim(live, "architect")

    reaped = locks.reap_stale([dead, live, unlocked])

    assert reaped == 1
    assert locks.is_locked(dead) is False
    assert locks.is_locked(live) is True


def test_corrupt_lock_raises_on_read_and_is_skipped_by_reaper(tmp_path: Path) -> None:
    locks = LockManager()
    artifact = _artifact(tmp_path)
    locks.lock_path(artifact).write_text("{not json", encoding="utf-8")

    with pytest.raises(CorruptLockError):
        locks.info(artifact)
    assert locks.reap_stale([artifact]) == 0
    assert locks.is_locked(artifact) is True
