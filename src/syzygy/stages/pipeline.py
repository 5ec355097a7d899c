from __future__ import annotations

import os
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

import structlog

from syzygy.roles.base import Role

log = structlog.get_logger("pipeline")

STAGES_DIR = "stages"
PENDING_DIR = "pending"
DONE_DIR = "done"


class StageName(StrEnum):
    SPEC = "spec"
    ARCH = "arch"
    TASKS = "tasks"
    TESTS = "tests"
    IMPL = "impl"
    REVIEW = "review"
    DOCS = "docs"


STAGE_ORDER: tuple[StageName, ...] = tuple(StageName)

# stage -> (producer, consumer)
STAGE_ROLES: dict[StageName, tuple[Role, Role]] = {
    StageName.SPEC: (Role.PRODUCT_MANAGER, Role.ARCHITECT),
    StageName.ARCH: (Role.ARCHITECT, Role.TEST_ENGINEER),
    StageName.TASKS: (Role.ARCHITECT, Role.DEVELOPER),
    StageName.TESTS: (Role.TEST_ENGINEER, Role.DEVELOPER),
    StageName.IMPL: (Role.DEVELOPER, Role.CODE_REVIEWER),
    StageName.REVIEW: (Role.CODE_REVIEWER, Role.DOCUMENTER),
    StageName.DOCS: (Role.DOCUMENTER, Role.PRODUCT_MANAGER),
}

# Role that acts on a new artifact in the stage; ``None`` ends the run.
NEXT_ROLE: dict[StageName, Role | None] = {
    StageName.SPEC: Role.ARCHITECT,
    StageName.ARCH: Role.TEST_ENGINEER,
    StageName.TASKS: Role.DEVELOPER,
    StageName.TESTS: Role.DEVELOPER,
    StageName.IMPL: Role.CODE_REVIEWER,
    StageName.REVIEW: Role.DOCUMENTER,
    StageName.DOCS: None,
}


class StageError(RuntimeError):
    """Raised when the stage tree cannot be created or used."""

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class MissingSourceError(StageError):
    """Raised when an artifact to move does not exist."""


class UnknownStageError(StageError):
    """Raised for a stage name that is not registered."""


@dataclass(frozen=True, slots=True)
class Stage:
    name: StageName
    pending_dir: Path
    done_dir: Path
    producer: Role
    consumer: Role


def is_artifact_name(name: str, lock_suffix: str = ".lock") -> bool:
    return not name.startswith(".") and not name.endswith(lock_suffix)


class StagePipeline:
    """The fixed seven-stage pending/done tree under a workspace root."""

    def __init__(self) -> None:
        self._stages: dict[StageName, Stage] = {}
        self._root: Path | None = None

    @property
    def root(self) -> Path:
        if self._root is None:
            raise StageError("Stage pipeline is not initialized")
        return self._root

    def initialize(self, root: Path) -> None:
        root = root.resolve()
        stages_dir = root / STAGES_DIR
        stages: dict[StageName, Stage] = {}
        try:
            for name in STAGE_ORDER:
                producer, consumer = STAGE_ROLES[name]
                stage = Stage(
                    name=name,
                    pending_dir=stages_dir / name.value / PENDING_DIR,
                    done_dir=stages_dir / name.value / DONE_DIR,
                    producer=producer,
                    consumer=consumer,
                )
                stage.pending_dir.mkdir(parents=True, exist_ok=True)
                stage.done_dir.mkdir(parents=True, exist_ok=True)
                stages[name] = stage
        except OSError as exc:
            raise StageError(f"Failed to initialize stages under {root}: {exc}") from exc
        self._stages = stages
        self._root = root
        log.info("stages_initialized", root=str(root), count=len(stages))

    def is_initialized(self) -> bool:
        return self._root is not None

    def stage(self, name: StageName | str) -> Stage:
        try:
            return self._stages[StageName(name)]
        except (KeyError, ValueError) as exc:
            raise UnknownStageError(f"Stage not found: {name}", stage=str(name)) from exc

    def all_stages(self) -> list[Stage]:
        return [self._stages[name] for name in STAGE_ORDER if name in self._stages]

    def pending_dirs(self) -> list[Path]:
        return [stage.pending_dir for stage in self.all_stages()]

    def move(self, source: Path, destination: Path) -> None:
        """Relocate an artifact with an atomic rename.

        Callers must hold the artifact's lock; the pipeline does not check it.
        """
        if not source.exists():
            raise MissingSourceError(f"Source file does not exist: {source}")
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            os.replace(source, destination)
        except OSError as exc:
            raise StageError(f"Failed to move {source} to {destination}: {exc}") from exc
        log.info("artifact_moved", source=str(source), destination=str(destination))

    def list_pending(self, name: StageName | str) -> list[Path]:
        stage = self.stage(name)
        if not stage.pending_dir.exists():
            log.warning("pending_dir_missing", stage=stage.name.value)
            return []
        try:
            entries = sorted(stage.pending_dir.iterdir(), key=lambda entry: entry.name)
        except OSError as exc:
            raise StageError(
                f"Failed to list {stage.pending_dir}: {exc}", stage=stage.name
            ) from exc
        return [entry for entry in entries if is_artifact_name(entry.name) and entry.is_file()]

    def list_all_pending(self) -> dict[StageName, list[Path]]:
        return {stage.name: self.list_pending(stage.name) for stage in self.all_stages()}

    def done_path_for(self, path: Path) -> Path:
        """Sibling location of a pending artifact in its stage's done area."""
        parent = path.resolve().parent
        for stage in self.all_stages():
            if parent == stage.pending_dir:
                return stage.done_dir / path.name
        raise StageError(f"Not a pending artifact: {path}")
