"""Orchestration coordinator.

The coordinator is the composition root of a run. It owns the stage tree, the
watcher, the completion tracker and the agent manager, and turns every new
artifact into one instruction for the next responsible role followed by a
workflow state change.

Events from the watcher are queued and handled one at a time by a single
consumer task, so each event is fully dispatched before the next is looked at.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog

from syzygy.agents import (
    AgentManager,
    AgentRunnerError,
    AgentStartConfig,
    AgentStatus,
    MonitorHandle,
    MonitorOptions,
    MonitorTimeoutError,
    RetryPolicy,
)
from syzygy.completion import CompletionEvent, CompletionTracker
from syzygy.config import SyzygyConfig
from syzygy.resume import ResumeDetector, ResumeState
from syzygy.roles import InstructionContext, Role, always_running_roles, get_brief, render_brief
from syzygy.sanitize import validate_brief, validate_feature_name
from syzygy.sessions.base import SessionHost
from syzygy.sessions.claude import ClaudeLauncher
from syzygy.stages.artifacts import ArtifactFormatError, read_artifact
from syzygy.stages.locks import LockError, LockManager
from syzygy.stages.pipeline import (
    NEXT_ROLE,
    STAGE_ORDER,
    MissingSourceError,
    StageError,
    StageName,
    StagePipeline,
)
from syzygy.watcher import ARTIFACT_CREATED, ArtifactEvent, StageWatcher, extract_stage_name
from syzygy.workflow import (
    ERROR_EVENT,
    TRANSITION_EVENT,
    StateTransition,
    WorkflowMachine,
    WorkflowState,
)

log = structlog.get_logger("orchestrator")

InstructionBuilder = Callable[[Role, InstructionContext], str]

# Workflow state the run moves to once a stage's artifact has been handed on.
NEXT_STATE: dict[StageName, WorkflowState] = {
    StageName.SPEC: WorkflowState.ARCH_PENDING,
    StageName.ARCH: WorkflowState.TESTS_PENDING,
    StageName.TASKS: WorkflowState.IMPL_PENDING,
    StageName.TESTS: WorkflowState.IMPL_PENDING,
    StageName.IMPL: WorkflowState.REVIEW_PENDING,
    StageName.REVIEW: WorkflowState.DOCS_PENDING,
    StageName.DOCS: WorkflowState.COMPLETE,
}

TASK_ID_PATTERN = re.compile(r"(task-\d+)")

ORCHESTRATOR_ID = "orchestrator"


class OrchestratorError(RuntimeError):
    """Raised when the coordinator is driven out of order."""


class Disposition(StrEnum):
    ADVANCE = "advance"
    HOLD = "hold"
    DEFER = "defer"
    DROP = "drop"


@dataclass(slots=True)
class OrchestratorState:
    """Everything that belongs to one run."""

    machine: WorkflowMachine
    root: Path
    watcher: StageWatcher
    queue: asyncio.Queue[ArtifactEvent] = field(default_factory=asyncio.Queue)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    seen: set[Path] = field(default_factory=set)
    deferred: list[ArtifactEvent] = field(default_factory=list)
    claims: dict[str, list[Path]] = field(default_factory=dict)
    monitors: dict[str, MonitorHandle] = field(default_factory=dict)
    tasks: list[asyncio.Task[None]] = field(default_factory=list)
    intake_task: asyncio.Task[None] | None = None
    intake_done: bool = False
    stopped: bool = False


def task_id_for(path: Path) -> str | None:
    """Task id from the artifact's front matter, falling back to the file name."""
    try:
        task_id = read_artifact(path).metadata.task_id
    except (ArtifactFormatError, OSError):
        task_id = None
    if task_id:
        return task_id
    match = TASK_ID_PATTERN.search(path.name)
    return match.group(1) if match else None


class Orchestrator:
    def __init__(
        self,
        config: SyzygyConfig,
        workspace_root: Path,
        host: SessionHost,
        *,
        instructions: InstructionBuilder = render_brief,
        manager: AgentManager | None = None,
        watcher_factory: Callable[[], StageWatcher] | None = None,
    ) -> None:
        self.config = config
        self.workspace_root = workspace_root
        self.host = host
        self.instructions = instructions
        self.manager = manager or AgentManager(
            host, config.agents, ClaudeLauncher(config.agents.command)
        )
        self.retry = RetryPolicy.from_config(config.retry)
        self.pipeline = StagePipeline()
        self.locks = LockManager()
        self.tracker = CompletionTracker()
        self._watcher_factory = watcher_factory or (
            lambda: StageWatcher(config.watcher.stability_seconds)
        )
        self._subscriptions: list[tuple[str, Callable[[Any], None]]] = []
        self._state: OrchestratorState | None = None

    @property
    def stage_root(self) -> Path:
        return self.workspace_root / self.config.workspace.root

    @property
    def state(self) -> OrchestratorState:
        if self._state is None:
            raise OrchestratorError("No workflow has been started")
        return self._state

    @property
    def machine(self) -> WorkflowMachine:
        return self.state.machine

    def is_running(self) -> bool:
        return self._state is not None and not self._state.stopped

    def subscribe(self, event: str, callback: Callable[[Any], None]) -> None:
        self._subscriptions.append((event, callback))
        if self._state is not None:
            self._state.machine.subscribe(event, callback)

    # Run lifecycle

    async def start_workflow(
        self, feature_name: str, initial_brief: str | None = None
    ) -> WorkflowMachine:
        name = validate_feature_name(feature_name)
        brief = validate_brief(initial_brief) if initial_brief else None
        if self.is_running():
            raise OrchestratorError("A workflow is already running")

        state = self._new_state(WorkflowMachine(name, initial_brief=brief))
        log.info("workflow_starting", feature=name, root=str(state.root))
        try:
            for role in always_running_roles():
                await self._start_agent(role, get_brief(role).agent_id())
            pm_id = get_brief(Role.PRODUCT_MANAGER).agent_id()
            self.tracker.register(pm_id, Role.PRODUCT_MANAGER, state.machine.feature_slug)
            state.machine.transition_to(WorkflowState.SPEC_PENDING)
            self._start_background(state)
            state.intake_task = asyncio.get_running_loop().create_task(self._intake_loop())
        except Exception:
            log.error("workflow_start_failed", feature=name)
            await self.stop_workflow()
            raise
        return state.machine

    async def resume_workflow(self) -> ResumeState:
        if self.is_running():
            raise OrchestratorError("A workflow is already running")
        detected = ResumeDetector(self.pipeline, self.locks).detect(self.stage_root)
        if not detected.has_pending_work:
            return detected
        if (
            not detected.feature_name
            or detected.resume_state is None
            or detected.resume_stage is None
        ):
            raise OrchestratorError("Cannot determine the feature of the interrupted run")

        machine = WorkflowMachine.restore(detected.feature_name, detected.resume_state)
        state = self._new_state(machine)
        state.intake_done = True
        try:
            for role in detected.required_roles:
                brief = get_brief(role)
                instance = 1 if brief.supports_multiple_instances else None
                await self._start_agent(role, brief.agent_id(instance))
            self._start_background(state)
            start = STAGE_ORDER.index(detected.resume_stage)
            for stage in STAGE_ORDER[start:]:
                for path in detected.pending_artifacts.get(stage, []):
                    state.queue.put_nowait(ArtifactEvent(ARTIFACT_CREATED, path, stage))
        except Exception:
            log.error("workflow_resume_failed", feature=detected.feature_name)
            await self.stop_workflow()
            raise
        log.info(
            "workflow_resumed",
            feature=detected.feature_name,
            stage=detected.resume_stage.value,
            state=detected.resume_state.value,
        )
        return detected

    def _new_state(self, machine: WorkflowMachine) -> OrchestratorState:
        self.pipeline.initialize(self.stage_root)
        self.tracker.clear()
        state = OrchestratorState(
            machine=machine,
            root=self.pipeline.root,
            watcher=self._watcher_factory(),
        )
        self._state = state
        for event, callback in self._subscriptions:
            machine.subscribe(event, callback)
        machine.subscribe(TRANSITION_EVENT, self._on_transition)
        machine.subscribe(ERROR_EVENT, lambda _notice: state.done.set())
        for path in self.pipeline.pending_dirs():
            state.watcher.add_path(path)
        state.watcher.subscribe(ARTIFACT_CREATED, self._enqueue)
        return state

    def _start_background(self, state: OrchestratorState) -> None:
        state.watcher.start()
        loop = asyncio.get_running_loop()
        state.tasks.append(loop.create_task(self._consume()))
        state.tasks.append(loop.create_task(self._supervise()))

    def _on_transition(self, transition: StateTransition) -> None:
        if transition.to_state is WorkflowState.COMPLETE and self._state is not None:
            self._state.done.set()

    async def wait_until_done(self) -> WorkflowState:
        state = self.state
        await state.done.wait()
        return state.machine.state

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self.state.queue.join()

    async def stop_workflow(self) -> None:
        state = self._state
        if state is None or state.stopped:
            return
        state.stopped = True
        log.info("workflow_stopping", feature=state.machine.feature_name)
        pending = [task for task in state.tasks if task is not asyncio.current_task()]
        if state.intake_task is not None and state.intake_task is not asyncio.current_task():
            pending.append(state.intake_task)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for handle in state.monitors.values():
            handle.stop()
        state.monitors.clear()
        await state.watcher.stop()
        await self.manager.stop_all()
        for agent_id, paths in state.claims.items():
            for path in paths:
                self._release(path, agent_id)
        state.claims.clear()
        state.done.set()
        log.info("workflow_stopped", state=state.machine.state.value)

    # Intake

    def _spec_path(self) -> Path:
        slug = self.state.machine.feature_slug
        return self.pipeline.stage(StageName.SPEC).pending_dir / f"{slug}-spec.md"

    async def _intake_loop(self) -> None:
        state = self.state
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.intake.timeout_seconds
        pm_id = get_brief(Role.PRODUCT_MANAGER).agent_id()
        while not state.intake_done:
            if self._spec_path().exists():
                await self._complete_intake()
                return
            if loop.time() >= deadline:
                if self._spec_path().exists():
                    await self._complete_intake()
                else:
                    self.handle_agent_error(
                        pm_id,
                        StageName.SPEC.value,
                        "Product manager timed out without writing a spec",
                    )
                return
            await asyncio.sleep(self.config.intake.poll_interval_seconds)

    async def _complete_intake(self) -> None:
        state = self.state
        if state.intake_done:
            return
        state.intake_done = True
        pm_id = get_brief(Role.PRODUCT_MANAGER).agent_id()
        self.tracker.cancel(pm_id)
        await self.manager.mark_completed(pm_id)
        log.info("intake_complete", spec=str(self._spec_path()))
        self.submit_artifact(self._spec_path())

    async def end_intake(self) -> bool:
        """The user ended the intake conversation; continue if a spec exists, else stop."""
        state = self.state
        if state.intake_task is not None and state.intake_task is not asyncio.current_task():
            state.intake_task.cancel()
        if state.intake_done or self._spec_path().exists():
            await self._complete_intake()
            return True
        log.warning("intake_ended_without_spec", feature=state.machine.feature_name)
        await self.stop_workflow()
        return False

    async def approve_spec(self) -> bool:
        """Acknowledge the spec; returns ``False`` if it has not been written yet."""
        if not self._spec_path().exists():
            return False
        await self._complete_intake()
        return True

    def submit_artifact(self, path: Path) -> ArtifactEvent:
        stage = extract_stage_name(path)
        if stage is None:
            raise StageError(f"Not inside a stage directory: {path}")
        event = ArtifactEvent(ARTIFACT_CREATED, path.resolve(), stage)
        self._enqueue(event)
        return event

    # Event handling

    def _enqueue(self, event: ArtifactEvent) -> None:
        state = self._state
        if state is None or state.stopped:
            return
        state.queue.put_nowait(event)

    async def _consume(self) -> None:
        state = self.state
        while True:
            event = await state.queue.get()
            try:
                await self._handle_event(event)
            finally:
                state.queue.task_done()

    def _disposition(self, target: WorkflowState) -> Disposition:
        machine = self.state.machine
        if machine.is_terminal():
            return Disposition.DROP
        if machine.can_transition(target):
            return Disposition.ADVANCE
        if machine.progress_index(target) <= machine.progress_index(machine.state):
            return Disposition.HOLD
        return Disposition.DEFER

    async def _handle_event(self, event: ArtifactEvent, replay: bool = False) -> None:
        state = self.state
        path = event.path
        agent_id = ORCHESTRATOR_ID
        try:
            if state.machine.is_terminal():
                log.info("event_dropped", path=str(path), state=state.machine.state.value)
                return
            if not replay:
                completion = self.tracker.check_file_created(path, event.stage)
                if completion is not None:
                    await self._on_completion(completion)
                if path in state.seen:
                    log.debug("event_duplicate", path=str(path))
                    return
                state.seen.add(path)

            target = NEXT_STATE[event.stage]
            disposition = self._disposition(target)
            log.info(
                "artifact_received",
                path=str(path),
                stage=event.stage.value,
                disposition=disposition.value,
            )
            if disposition is Disposition.DROP:
                return
            if disposition is Disposition.DEFER:
                state.deferred.append(event)
                return

            role = NEXT_ROLE[event.stage]
            if role is None:
                self._archive(path, ORCHESTRATOR_ID)
            else:
                agent_id = self._select_agent_id(role)
                if not await self._dispatch(event, role, agent_id):
                    return

            if disposition is Disposition.ADVANCE:
                state.machine.transition_to(target)
                await self._replay_deferred()
        except Exception as exc:
            log.error(
                "event_handling_failed",
                path=str(path),
                stage=event.stage.value,
                agent_id=agent_id,
                error=str(exc),
            )
            self.handle_agent_error(agent_id, event.stage.value, str(exc))

    async def _replay_deferred(self) -> None:
        state = self.state
        if not state.deferred:
            return
        waiting, state.deferred = state.deferred, []
        for event in waiting:
            await self._handle_event(event, replay=True)

    def _select_agent_id(self, role: Role) -> str:
        brief = get_brief(role)
        if not brief.supports_multiple_instances:
            return brief.agent_id()
        for instance in range(1, self.config.agents.num_developers + 1):
            agent_id = brief.agent_id(instance)
            snapshot = self.manager.get_agent(agent_id)
            if snapshot is None or snapshot.status is not AgentStatus.WORKING:
                return agent_id
        return brief.agent_id(1)

    async def _dispatch(self, event: ArtifactEvent, role: Role, agent_id: str) -> bool:
        """Hand the artifact to *agent_id*; ``False`` if another claimant holds it."""
        state = self.state
        path = event.path
        if not self.locks.claim(path, agent_id):
            log.warning("artifact_contended", path=str(path), agent_id=agent_id)
            return False
        state.claims.setdefault(agent_id, []).append(path)

        if self.manager.get_agent(agent_id) is None:
            await self._start_agent(role, agent_id)
        else:
            self.manager.reactivate(agent_id)

        task_id = task_id_for(path)
        machine = state.machine
        self.tracker.register(agent_id, role, machine.feature_slug, task_id=task_id, source=path)
        context = InstructionContext(
            feature_name=machine.feature_name,
            feature_slug=machine.feature_slug,
            initial_brief=machine.run.initial_brief,
            stage_paths={event.stage.value: path},
            task_id=task_id,
            workspace_root=str(state.root),
        )
        await self.manager.send_message(agent_id, self.instructions(role, context))
        self.manager.set_current_task(agent_id, task_id or path.name)
        self._start_fallback_monitor(agent_id, event.stage)
        log.info("work_dispatched", agent_id=agent_id, role=role.value, path=str(path))
        return True

    async def _start_agent(self, role: Role, agent_id: str) -> None:
        prompt = ""
        if role is Role.PRODUCT_MANAGER and self._state is not None:
            machine = self._state.machine
            prompt = self.instructions(
                role,
                InstructionContext(
                    feature_name=machine.feature_name,
                    feature_slug=machine.feature_slug,
                    initial_brief=machine.run.initial_brief,
                    workspace_root=str(self._state.root),
                ),
            )
        handle = await self.manager.start_with_retry(
            AgentStartConfig(
                role=role,
                initial_prompt=prompt,
                working_directory=self.workspace_root,
                agent_id=agent_id,
            ),
            self.retry,
        )
        await handle.wait_for_ready()
        log.info("agent_started", agent_id=agent_id, role=role.value, attempts=handle.attempts)

    def _start_fallback_monitor(self, agent_id: str, stage: StageName) -> None:
        state = self.state
        previous = state.monitors.pop(agent_id, None)
        if previous is not None:
            previous.stop()

        def on_error(error: AgentRunnerError) -> None:
            if isinstance(error, MonitorTimeoutError) and self.tracker.is_tracking(agent_id):
                self.handle_agent_error(agent_id, stage.value, str(error))
            else:
                log.warning("agent_output_error", agent_id=agent_id, error=str(error))

        state.monitors[agent_id] = self.manager.start_monitoring(
            agent_id,
            MonitorOptions(
                poll_interval_seconds=self.config.monitor.poll_interval_seconds,
                timeout_seconds=self.config.monitor.work_timeout_seconds,
                on_complete=lambda: log.info("agent_output_complete", agent_id=agent_id),
                on_error=on_error,
            ),
        )

    async def _on_completion(self, completion: CompletionEvent) -> None:
        state = self.state
        agent_id = completion.agent_id
        monitor = state.monitors.pop(agent_id, None)
        if monitor is not None:
            monitor.stop()
        self.manager.set_current_task(agent_id, None)
        await self.manager.mark_completed(agent_id)
        if completion.role is Role.PRODUCT_MANAGER:
            state.intake_done = True
        for source in state.claims.pop(agent_id, []):
            self._archive(source, agent_id)

    def _archive(self, path: Path, claimant: str) -> None:
        """Move a pending artifact to its stage's done area under its lock."""
        info = self.locks.info(path)
        owned = info is not None and info.agent_id == claimant
        if not owned and not self.locks.claim(path, claimant):
            log.warning("archive_contended", path=str(path), claimant=claimant)
            return
        try:
            self.pipeline.move(path, self.pipeline.done_path_for(path))
        except MissingSourceError:
            log.info("archive_source_gone", path=str(path))
        finally:
            self._release(path, claimant)
        # A later artifact may reuse the name once this one has left pending.
        if self._state is not None:
            self._state.seen.discard(path)

    def _release(self, path: Path, claimant: str) -> None:
        try:
            self.locks.release(path)
        except LockError as exc:
            log.warning("lock_release_failed", path=str(path), claimant=claimant, error=str(exc))

    def handle_agent_error(self, agent_id: str, stage: str, message: str) -> None:
        state = self._state
        if state is None or state.machine.is_terminal():
            return
        state.machine.transition_to_error(message, agent_id, stage)

    async def _supervise(self) -> None:
        interval = self.config.monitor.stuck_check_interval_seconds
        while True:
            await asyncio.sleep(interval)
            for agent_id in self.manager.check_for_stuck_agents():
                log.warning("agent_needs_attention", agent_id=agent_id)

    def status(self) -> dict[str, Any]:
        state = self._state
        if state is None:
            return {"state": None, "agents": []}
        run = state.machine.run
        return {
            "feature": run.feature_name,
            "slug": run.feature_slug,
            "state": run.state.value,
            "error": run.error.to_dict() if run.error else None,
            "agents": [snapshot.to_dict() for snapshot in self.manager.list_agents()],
            "awaiting_output": self.tracker.pending_agents(),
            "deferred": [str(event.path) for event in state.deferred],
        }
