from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler, FileSystemMovedEvent
from watchdog.observers import Observer

from syzygy.events import Notifier
from syzygy.stages.pipeline import STAGES_DIR, StageName

log = structlog.get_logger("watcher")

ARTIFACT_CREATED = "artifact:created"
ARTIFACT_MODIFIED = "artifact:modified"
ARTIFACT_DELETED = "artifact:deleted"

IGNORED_DIRS = frozenset({".git", "node_modules"})
LOCK_SUFFIX = ".lock"


class WatcherError(RuntimeError):
    """Raised when the watcher is misconfigured or the OS watch fails."""


@dataclass(frozen=True, slots=True)
class ArtifactEvent:
    kind: str
    path: Path
    stage: StageName


def extract_stage_name(path: Path) -> StageName | None:
    """Stage named by the segment right after ``stages``, if it is a known stage."""
    parts = path.parts
    for index in range(len(parts) - 2, -1, -1):
        if parts[index] != STAGES_DIR:
            continue
        try:
            return StageName(parts[index + 1])
        except ValueError:
            continue
    return None


def is_ignored(path: Path) -> bool:
    name = path.name
    if not name or name.startswith(".") or name.endswith(LOCK_SUFFIX):
        return True
    return any(part in IGNORED_DIRS for part in path.parts)


class _ObserverBridge(FileSystemEventHandler):
    """Runs on the observer thread; hands every event to the asyncio loop."""

    def __init__(self, watcher: StageWatcher, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self._watcher = watcher
        self._loop = loop

    def _forward(self, kind: str, raw_path: str | bytes) -> None:
        path = Path(os.fsdecode(raw_path))
        try:
            self._loop.call_soon_threadsafe(self._watcher._on_raw_event, kind, path)
        except RuntimeError:
            # Loop already closed during shutdown.
            pass

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward("created", event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward("modified", event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward("deleted", event.src_path)

    def on_moved(self, event: FileSystemMovedEvent) -> None:
        if event.is_directory:
            return
        self._forward("deleted", event.src_path)
        self._forward("created", event.dest_path)


class StageWatcher:
    """Watches stage pending areas and publishes debounced artifact events.

    Raw events arrive on watchdog's observer thread and are marshalled onto the
    event loop; all debounce state is owned by the loop. A created or modified
    file is reported only after its size and mtime have been unchanged for
    ``stability_seconds``.
    """

    def __init__(self, stability_seconds: float = 0.1, poll_seconds: float = 0.05) -> None:
        self.stability_seconds = stability_seconds
        self.poll_seconds = min(poll_seconds, stability_seconds) if stability_seconds else 0.01
        self._paths: list[Path] = []
        self._notifier = Notifier(
            "watcher", {ARTIFACT_CREATED, ARTIFACT_MODIFIED, ARTIFACT_DELETED}
        )
        self._observer: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._settling: dict[Path, asyncio.Task[None]] = {}
        self._known: set[Path] = set()

    @property
    def paths(self) -> list[Path]:
        return list(self._paths)

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def add_path(self, path: Path) -> None:
        if self.is_running:
            raise WatcherError(f"Cannot add watch path after start: {path}")
        if path not in self._paths:
            self._paths.append(path)

    def subscribe(self, event: str, callback: Callable[[ArtifactEvent], None]) -> None:
        self._notifier.subscribe(event, callback)

    def unsubscribe(self, event: str, callback: Callable[[ArtifactEvent], None]) -> None:
        self._notifier.unsubscribe(event, callback)

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        if self.is_running:
            log.warning("watcher_already_started")
            return
        if not self._paths:
            raise WatcherError("No watch paths configured")
        self._loop = loop or asyncio.get_running_loop()
        self._known = {
            entry
            for path in self._paths
            if path.is_dir()
            for entry in path.iterdir()
            if entry.is_file() and not is_ignored(entry)
        }
        observer = Observer()
        bridge = _ObserverBridge(self, self._loop)
        try:
            for path in self._paths:
                observer.schedule(bridge, str(path), recursive=False)
            observer.start()
        except OSError as exc:
            raise WatcherError(f"Failed to start watcher: {exc}") from exc
        self._observer = observer
        log.info("watcher_started", paths=[str(path) for path in self._paths])

    async def stop(self) -> None:
        observer = self._observer
        if observer is None:
            return
        self._observer = None
        for task in self._settling.values():
            task.cancel()
        self._settling.clear()
        observer.stop()
        await asyncio.to_thread(observer.join, 5.0)
        log.info("watcher_stopped")

    def _on_raw_event(self, kind: str, path: Path) -> None:
        if self._observer is None or self._loop is None or is_ignored(path):
            return
        if kind == "deleted":
            task = self._settling.pop(path, None)
            if task is not None:
                task.cancel()
            self._known.discard(path)
            self._emit(ARTIFACT_DELETED, path)
            return
        if path in self._settling:
            return
        self._settling[path] = self._loop.create_task(self._settle(path))

    async def _settle(self, path: Path) -> None:
        loop = asyncio.get_running_loop()
        last: tuple[int, int] | None = None
        stable_since = loop.time()
        try:
            while True:
                try:
                    stat = path.stat()
                except FileNotFoundError:
                    return
                signature = (stat.st_size, stat.st_mtime_ns)
                now = loop.time()
                if signature != last:
                    last = signature
                    stable_since = now
                elif now - stable_since >= self.stability_seconds:
                    break
                await asyncio.sleep(self.poll_seconds)
        finally:
            if self._settling.get(path) is asyncio.current_task():
                del self._settling[path]
        kind = ARTIFACT_MODIFIED if path in self._known else ARTIFACT_CREATED
        self._known.add(path)
        self._emit(kind, path)

    def _emit(self, kind: str, path: Path) -> None:
        stage = extract_stage_name(path)
        if stage is None:
            log.debug("event_without_stage", path=str(path), kind=kind)
            return
        log.debug("artifact_event", kind=kind, path=str(path), stage=stage.value)
        self._notifier.notify(kind, ArtifactEvent(kind=kind, path=path, stage=stage))
