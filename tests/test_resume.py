import json
import subprocess
import sys
from pathlib import Path

from syzygy.resume import ResumeDetector
from syzygy.roles import Role
from syzygy.stages.locks import LockManager
from syzygy.stages.pipeline import StageName, StagePipeline
from syzygy.workflow import WorkflowState

TASK = """---
type: task
from: architect
to: developer
status: pending
featureName: Dark mode toggle
taskId: task-1
---

Build the toggle.
"""


def _detector() -> ResumeDetector:
    return ResumeDetector(StagePipeline(), LockManager())


def test_empty_workspace_has_nothing_to_resume(tmp_path: Path) -> None:
    state = _detector().detect(tmp_path / ".syzygy")

    assert state.has_pending_work is False
    assert state.resume_state is None
    assert state.required_roles == ()


def test_earliest_pending_stage_decides_resume_point(tmp_path: Path) -> None:
    root = tmp_path / ".syzygy"
    detector = _detector()
    detector.pipeline.initialize(root)
    tasks = detector.pipeline.stage("tasks").pending_dir
    review = detector.pipeline.stage("review").pending_dir
    (tasks / "dark-mode-toggle-task-1.md").write_text(TASK, encoding="utf-8")
    (review / "dark-mode-toggle-task-0-review.md").write_text("approved", encoding="utf-8")

    state = detector.detect(root)

    assert state.has_pending_work is True
    assert state.resume_stage is StageName.TASKS
    assert state.resume_state is WorkflowState.IMPL_PENDING
    assert state.feature_name == "Dark mode toggle"
    assert state.feature_slug == "dark-mode-toggle"
    assert state.required_roles == (Role.DEVELOPER, Role.CODE_REVIEWER, Role.DOCUMENTER)
    assert set(state.pending_artifacts) == {StageName.TASKS, StageName.REVIEW}


def test_stale_locks_are_reaped_across_all_stages(tmp_path: Path) -> None:
    root = tmp_path / ".syzygy"
    detector = _detector()
    detector.pipeline.initialize(root)
    artifact = detector.pipeline.stage("impl").pending_dir / "x-task-1-implementation.md"
    artifact.write_text("summary", encoding="utf-8")
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    payload = {"agentId": "developer-1", "claimedAt": "2024-01-01T00:00:00Z", "pid": process.pid}
    detector.locks.lock_path(artifact).write_text(json.dumps(payload), encoding="utf-8")

    state = detector.detect(root)

    assert state.stale_locks_reaped == 1
    assert detector.locks.is_locked(artifact) is False
    assert state.resume_state is WorkflowState.REVIEW_PENDING
    assert state.required_roles == (Role.CODE_REVIEWER, Role.DOCUMENTER)


def test_unparseable_artifact_leaves_feature_name_unknown(tmp_path: Path) -> None:
    root = tmp_path / ".syzygy"
    detector = _detector()
    detector.pipeline.initialize(root)
    (detector.pipeline.stage("tests").pending_dir / "x-tests.ts").write_text(
        "describe('x', () => {})", encoding="utf-8"
    )

    state = detector.detect(root)

    assert state.has_pending_work is True
    assert state.feature_name is None
    assert state.feature_slug is None
    assert state.resume_state is WorkflowState.IMPL_PENDING
