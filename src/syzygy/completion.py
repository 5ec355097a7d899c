"""File-based completion detection.

Each dispatched agent registers the output files it is expected to write. The
first matching creation reported by the watcher consumes the registration and
is reported as that agent's completion.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import structlog

from syzygy.roles.base import Role
from syzygy.stages.pipeline import StageName

log = structlog.get_logger("completion")

ANY_TASK = r"task-\d+"


@dataclass(frozen=True, slots=True)
class OutputPattern:
    stage: StageName
    build: Callable[[str, str], str]

    def compile(self, feature_slug: str, task_id: str | None) -> re.Pattern[str]:
        task_part = re.escape(task_id) if task_id else ANY_TASK
        return re.compile(self.build(re.escape(feature_slug), task_part))


OUTPUT_PATTERNS: dict[Role, tuple[OutputPattern, ...]] = {
    Role.PRODUCT_MANAGER: (
        OutputPattern(StageName.SPEC, lambda slug, task: f"^{slug}-spec\\.md$"),
    ),
    Role.ARCHITECT: (
        OutputPattern(StageName.ARCH, lambda slug, task: f"^{slug}-architecture\\.md$"),
    ),
    Role.TEST_ENGINEER: (
        OutputPattern(StageName.TESTS, lambda slug, task: f"^{slug}-tests\\.ts$"),
    ),
    Role.DEVELOPER: (
        OutputPattern(
            StageName.IMPL, lambda slug, task: f"^{slug}-{task}-implementation\\.md$"
        ),
    ),
    # Approval or a fixes request; either one completes the review.
    Role.CODE_REVIEWER: (
        OutputPattern(StageName.REVIEW, lambda slug, task: f"^{slug}-{task}-review\\.md$"),
        OutputPattern(StageName.TASKS, lambda slug, task: f"^{slug}-{task}-fixes\\.md$"),
    ),
    Role.DOCUMENTER: (
        OutputPattern(StageName.DOCS, lambda slug, task: f"^{slug}-documentation\\.md$"),
    ),
}

if set(OUTPUT_PATTERNS) != set(Role):
    raise RuntimeError("Every role needs at least one output pattern")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class ExpectedOutput:
    agent_id: str
    role: Role
    stage: StageName
    pattern: re.Pattern[str]
    feature_slug: str
    task_id: str | None = None
    source: Path | None = None
    registered_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True, slots=True)
class CompletionEvent:
    agent_id: str
    role: Role
    path: Path
    stage: StageName
    source: Path | None = None
    completed_at: datetime = field(default_factory=_utcnow)


class CompletionTracker:
    def __init__(self) -> None:
        self._pending: dict[str, tuple[ExpectedOutput, ...]] = {}

    def register(
        self,
        agent_id: str,
        role: Role,
        feature_slug: str,
        task_id: str | None = None,
        source: Path | None = None,
    ) -> tuple[ExpectedOutput, ...]:
        """Replace *agent_id*'s expectations with the outputs its role produces."""
        expected = tuple(
            ExpectedOutput(
                agent_id=agent_id,
                role=role,
                stage=pattern.stage,
                pattern=pattern.compile(feature_slug, task_id),
                feature_slug=feature_slug,
                task_id=task_id,
                source=source,
            )
            for pattern in OUTPUT_PATTERNS[role]
        )
        self._pending[agent_id] = expected
        log.info(
            "work_registered",
            agent_id=agent_id,
            role=role.value,
            task_id=task_id,
            stages=[item.stage.value for item in expected],
        )
        return expected

    def check_file_created(self, path: Path, stage: StageName) -> CompletionEvent | None:
        for agent_id, expected_outputs in list(self._pending.items()):
            for expected in expected_outputs:
                if expected.stage is not stage or not expected.pattern.match(path.name):
                    continue
                del self._pending[agent_id]
                log.info(
                    "completion_detected",
                    agent_id=agent_id,
                    role=expected.role.value,
                    path=str(path),
                    stage=stage.value,
                )
                return CompletionEvent(
                    agent_id=agent_id,
                    role=expected.role,
                    path=path,
                    stage=stage,
                    source=expected.source,
                )
        return None

    def cancel(self, agent_id: str) -> None:
        if self._pending.pop(agent_id, None) is not None:
            log.info("work_cancelled", agent_id=agent_id)

    def pending_agents(self) -> list[str]:
        return list(self._pending)

    def is_tracking(self, agent_id: str) -> bool:
        return agent_id in self._pending

    def expected_outputs(self, agent_id: str) -> tuple[ExpectedOutput, ...]:
        return self._pending.get(agent_id, ())

    def clear(self) -> None:
        self._pending.clear()
