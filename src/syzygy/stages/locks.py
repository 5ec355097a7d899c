from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import psutil
import structlog

log = structlog.get_logger("locks")

LOCK_SUFFIX = ".lock"


class LockError(RuntimeError):
    """Raised when a lock file cannot be read or removed."""

    def __init__(self, message: str, *, lock_path: Path | None = None) -> None:
        super().__init__(message)
        self.lock_path = lock_path


class CorruptLockError(LockError):
    """Raised when a lock file exists but its content cannot be decoded."""


@dataclass(frozen=True, slots=True)
class LockInfo:
    agent_id: str
    claimed_at: str
    pid: int

    def to_dict(self) -> dict[str, object]:
        return {"agentId": self.agent_id, "claimedAt": self.claimed_at, "pid": self.pid}


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        return True


class LockManager:
    """Claim-once locks co-located with artifacts (``<artifact><suffix>``)."""

    def __init__(self, suffix: str = LOCK_SUFFIX) -> None:
        self.suffix = suffix

    def lock_path(self, path: Path) -> Path:
        return path.with_name(path.name + self.suffix)

    def claim(self, path: Path, claimant_id: str) -> bool:
        """Atomically create the lock; ``False`` means someone else holds it."""
        lock_path = self.lock_path(path)
        info = LockInfo(agent_id=claimant_id, claimed_at=_utcnow_iso(), pid=os.getpid())
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            log.debug("lock_contended", path=str(path), agent_id=claimant_id)
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(info.to_dict(), handle, indent=2)
        log.info("lock_claimed", path=str(path), agent_id=claimant_id)
        return True

    def release(self, path: Path) -> None:
        lock_path = self.lock_path(path)
        try:
            lock_path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise LockError(
                f"Failed to release lock {lock_path}: {exc}", lock_path=lock_path
            ) from exc
        log.info("lock_released", path=str(path))

    def is_locked(self, path: Path) -> bool:
        return self.lock_path(path).exists()

    def info(self, path: Path) -> LockInfo | None:
        lock_path = self.lock_path(path)
        try:
            raw = lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise LockError(
                f"Failed to read lock {lock_path}: {exc}", lock_path=lock_path
            ) from exc
        try:
            payload = json.loads(raw)
            return LockInfo(
                agent_id=str(payload["agentId"]),
                claimed_at=str(payload["claimedAt"]),
                pid=int(payload["pid"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise CorruptLockError(f"Corrupt lock file {lock_path}", lock_path=lock_path) from exc

    def reap_stale(self, paths: list[Path]) -> int:
        """Release locks among *paths* whose owning process is gone; return the count."""
        reaped = 0
        for path in paths:
            try:
                info = self.info(path)
            except CorruptLockError as exc:
                log.warning("lock_corrupt_skipped", path=str(path), error=str(exc))
                continue
            if info is None:
                continue
            if _process_alive(info.pid):
                log.debug("lock_owner_alive", path=str(path), pid=info.pid)
                continue
            log.info("lock_stale_reaped", path=str(path), pid=info.pid, agent_id=info.agent_id)
            self.release(path)
            reaped += 1
        return reaped
