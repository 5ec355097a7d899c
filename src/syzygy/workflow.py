from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

from syzygy.events import Notifier
from syzygy.sanitize import create_slug

log = structlog.get_logger("workflow")


class WorkflowState(StrEnum):
    IDLE = "idle"
    SPEC_PENDING = "spec_pending"
    ARCH_PENDING = "arch_pending"
    TESTS_PENDING = "tests_pending"
    IMPL_PENDING = "impl_pending"
    REVIEW_PENDING = "review_pending"
    DOCS_PENDING = "docs_pending"
    COMPLETE = "complete"
    ERROR = "error"


VALID_TRANSITIONS: dict[WorkflowState, frozenset[WorkflowState]] = {
    WorkflowState.IDLE: frozenset({WorkflowState.SPEC_PENDING, WorkflowState.ERROR}),
    WorkflowState.SPEC_PENDING: frozenset({WorkflowState.ARCH_PENDING, WorkflowState.ERROR}),
    WorkflowState.ARCH_PENDING: frozenset({WorkflowState.TESTS_PENDING, WorkflowState.ERROR}),
    WorkflowState.TESTS_PENDING: frozenset({WorkflowState.IMPL_PENDING, WorkflowState.ERROR}),
    WorkflowState.IMPL_PENDING: frozenset({WorkflowState.REVIEW_PENDING, WorkflowState.ERROR}),
    # Review can send the run back to implementation for fixes.
    WorkflowState.REVIEW_PENDING: frozenset(
        {WorkflowState.DOCS_PENDING, WorkflowState.IMPL_PENDING, WorkflowState.ERROR}
    ),
    WorkflowState.DOCS_PENDING: frozenset({WorkflowState.COMPLETE, WorkflowState.ERROR}),
    WorkflowState.COMPLETE: frozenset({WorkflowState.IDLE}),
    WorkflowState.ERROR: frozenset({WorkflowState.IDLE}),
}

# Forward order of the non-terminal states, used to compare progress.
PIPELINE_ORDER: tuple[WorkflowState, ...] = (
    WorkflowState.IDLE,
    WorkflowState.SPEC_PENDING,
    WorkflowState.ARCH_PENDING,
    WorkflowState.TESTS_PENDING,
    WorkflowState.IMPL_PENDING,
    WorkflowState.REVIEW_PENDING,
    WorkflowState.DOCS_PENDING,
    WorkflowState.COMPLETE,
)

TRANSITION_EVENT = "state:transition"
ERROR_EVENT = "state:error"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WorkflowTransitionError(RuntimeError):
    """Raised on an illegal state transition. Always an ordering bug."""

    def __init__(
        self,
        current: WorkflowState,
        attempted: WorkflowState,
        valid: frozenset[WorkflowState],
    ) -> None:
        allowed = ", ".join(sorted(state.value for state in valid)) or "none"
        super().__init__(
            f"Invalid transition from {current.value} to {attempted.value} (allowed: {allowed})"
        )
        self.current = current
        self.attempted = attempted
        self.valid = valid


@dataclass(slots=True)
class WorkflowError:
    message: str
    agent_id: str
    stage: str
    timestamp: datetime = field(default_factory=_utcnow)
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "agent_id": self.agent_id,
            "stage": self.stage,
            "timestamp": self.timestamp.replace(microsecond=0).isoformat(),
            "context": dict(self.context),
        }


@dataclass(slots=True)
class WorkflowRun:
    feature_name: str
    feature_slug: str
    initial_brief: str | None = None
    state: WorkflowState = WorkflowState.IDLE
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    error: WorkflowError | None = None


@dataclass(frozen=True, slots=True)
class StateTransition:
    from_state: WorkflowState
    to_state: WorkflowState
    feature_name: str


@dataclass(frozen=True, slots=True)
class StateErrorNotice:
    state: WorkflowState
    error: WorkflowError


class WorkflowMachine:
    """The single authoritative pipeline state of one feature run."""

    def __init__(self, feature_name: str, initial_brief: str | None = None) -> None:
        self._run = WorkflowRun(
            feature_name=feature_name,
            feature_slug=create_slug(feature_name),
            initial_brief=initial_brief,
        )
        self._notifier = Notifier("workflow", {TRANSITION_EVENT, ERROR_EVENT})
        log.info("workflow_initialized", feature=feature_name, slug=self._run.feature_slug)

    @classmethod
    def restore(
        cls,
        feature_name: str,
        state: WorkflowState,
        initial_brief: str | None = None,
    ) -> WorkflowMachine:
        """Build a machine already positioned at *state*, for resuming an interrupted run."""
        machine = cls(feature_name, initial_brief=initial_brief)
        machine._run.state = state
        log.info("workflow_restored", feature=feature_name, state=state.value)
        return machine

    @property
    def state(self) -> WorkflowState:
        return self._run.state

    @property
    def feature_name(self) -> str:
        return self._run.feature_name

    @property
    def feature_slug(self) -> str:
        return self._run.feature_slug

    @property
    def run(self) -> WorkflowRun:
        return replace(self._run)

    def can_transition(self, to: WorkflowState) -> bool:
        return to in VALID_TRANSITIONS[self._run.state]

    def transition_to(self, to: WorkflowState) -> None:
        current = self._run.state
        if not self.can_transition(to):
            log.error(
                "invalid_transition",
                from_state=current.value,
                to_state=to.value,
                valid=sorted(state.value for state in VALID_TRANSITIONS[current]),
            )
            raise WorkflowTransitionError(current, to, VALID_TRANSITIONS[current])

        self._run.state = to
        if to is WorkflowState.COMPLETE:
            self._run.completed_at = _utcnow()
        log.info("state_transition", from_state=current.value, to_state=to.value)
        self._notifier.notify(
            TRANSITION_EVENT,
            StateTransition(from_state=current, to_state=to, feature_name=self.feature_name),
        )

    def transition_to_error(
        self,
        message: str,
        agent_id: str,
        stage: str,
        context: dict[str, Any] | None = None,
    ) -> WorkflowError:
        previous = self._run.state
        error = WorkflowError(
            message=message,
            agent_id=agent_id,
            stage=stage,
            context=dict(context or {}),
        )
        self._run.state = WorkflowState.ERROR
        self._run.error = error
        log.error(
            "workflow_error",
            message=message,
            agent_id=agent_id,
            stage=stage,
            previous_state=previous.value,
        )
        self._notifier.notify(ERROR_EVENT, StateErrorNotice(state=previous, error=error))
        return error

    def reset(self) -> None:
        self._run.state = WorkflowState.IDLE
        self._run.error = None
        self._run.completed_at = None
        self._run.started_at = _utcnow()
        log.info("workflow_reset", feature=self.feature_name)

    def subscribe(self, event: str, callback: Callable[[Any], None]) -> None:
        self._notifier.subscribe(event, callback)

    def unsubscribe(self, event: str, callback: Callable[[Any], None]) -> None:
        self._notifier.unsubscribe(event, callback)

    def is_terminal(self) -> bool:
        return self._run.state in {WorkflowState.COMPLETE, WorkflowState.ERROR}

    def progress_index(self, state: WorkflowState) -> int:
        """Position of *state* in forward pipeline order; -1 for the error sink."""
        try:
            return PIPELINE_ORDER.index(state)
        except ValueError:
            return -1
