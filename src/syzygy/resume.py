from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import structlog

from syzygy.roles.base import Role
from syzygy.sanitize import create_slug
from syzygy.stages.artifacts import ArtifactFormatError, read_artifact
from syzygy.stages.locks import LockManager
from syzygy.stages.pipeline import STAGE_ORDER, StageName, StagePipeline
from syzygy.workflow import WorkflowState

log = structlog.get_logger("resume")

RESUME_STATE: dict[StageName, WorkflowState] = {
    StageName.SPEC: WorkflowState.SPEC_PENDING,
    StageName.ARCH: WorkflowState.ARCH_PENDING,
    StageName.TASKS: WorkflowState.IMPL_PENDING,
    StageName.TESTS: WorkflowState.IMPL_PENDING,
    StageName.IMPL: WorkflowState.REVIEW_PENDING,
    StageName.REVIEW: WorkflowState.DOCS_PENDING,
    StageName.DOCS: WorkflowState.DOCS_PENDING,
}

# Roles that still have work to do once the run picks up at a stage.
REQUIRED_ROLES: dict[StageName, tuple[Role, ...]] = {
    StageName.SPEC: (
        Role.ARCHITECT,
        Role.TEST_ENGINEER,
        Role.DEVELOPER,
        Role.CODE_REVIEWER,
        Role.DOCUMENTER,
    ),
    StageName.ARCH: (Role.TEST_ENGINEER, Role.DEVELOPER, Role.CODE_REVIEWER, Role.DOCUMENTER),
    StageName.TASKS: (Role.DEVELOPER, Role.CODE_REVIEWER, Role.DOCUMENTER),
    StageName.TESTS: (Role.DEVELOPER, Role.CODE_REVIEWER, Role.DOCUMENTER),
    StageName.IMPL: (Role.CODE_REVIEWER, Role.DOCUMENTER),
    StageName.REVIEW: (Role.DOCUMENTER,),
    StageName.DOCS: (Role.DOCUMENTER,),
}


@dataclass(slots=True)
class ResumeState:
    has_pending_work: bool
    feature_name: str | None = None
    feature_slug: str | None = None
    resume_state: WorkflowState | None = None
    resume_stage: StageName | None = None
    pending_artifacts: dict[StageName, list[Path]] = field(default_factory=dict)
    stale_locks_reaped: int = 0
    required_roles: tuple[Role, ...] = ()


class ResumeDetector:
    """Works out where an interrupted run left off from what is still pending."""

    def __init__(self, pipeline: StagePipeline, locks: LockManager) -> None:
        self.pipeline = pipeline
        self.locks = locks

    def detect(self, root: Path) -> ResumeState:
        if not self.pipeline.is_initialized() or self.pipeline.root != root.resolve():
            self.pipeline.initialize(root)

        pending = {
            stage: paths
            for stage, paths in self.pipeline.list_all_pending().items()
            if paths
        }
        if not pending:
            log.info("no_pending_work", root=str(root))
            return ResumeState(has_pending_work=False)

        resume_stage = next(stage for stage in STAGE_ORDER if stage in pending)
        reaped = self.locks.reap_stale([path for paths in pending.values() for path in paths])
        feature_name = self._feature_name(pending[resume_stage][0])
        state = ResumeState(
            has_pending_work=True,
            feature_name=feature_name,
            feature_slug=create_slug(feature_name) if feature_name else None,
            resume_state=RESUME_STATE[resume_stage],
            resume_stage=resume_stage,
            pending_artifacts=pending,
            stale_locks_reaped=reaped,
            required_roles=REQUIRED_ROLES[resume_stage],
        )
        log.info(
            "resume_detected",
            stage=resume_stage.value,
            state=state.resume_state.value if state.resume_state else None,
            feature=feature_name,
            pending=sum(len(paths) for paths in pending.values()),
            reaped=reaped,
        )
        return state

    @staticmethod
    def _feature_name(path: Path) -> str | None:
        try:
            return read_artifact(path).metadata.feature_name
        except (ArtifactFormatError, OSError) as exc:
            log.warning("feature_name_unreadable", path=str(path), error=str(exc))
            return None
