from __future__ import annotations

import asyncio
import atexit
import re
import signal
import sys
import tempfile
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog

from syzygy.config import AgentsConfig, RetryConfig
from syzygy.roles.base import Role
from syzygy.sessions.base import SessionHost, SessionHostError
from syzygy.sessions.claude import ClaudeLauncher

log = structlog.get_logger("agents")

MAX_CHUNK_BYTES = 4000

COMPLETION_MARKERS = (
    re.compile(r"task\s+(?:complete|completed|finish|finished|done)", re.IGNORECASE),
    re.compile(r"successfully\s+(?:complete|completed|finish|finished)", re.IGNORECASE),
    re.compile(r"\[✓\]\s+(?:complete|done)", re.IGNORECASE),
    re.compile(r"work\s+finished", re.IGNORECASE),
)

ERROR_MARKERS = (
    re.compile(r"error:", re.IGNORECASE),
    re.compile(r"failed:", re.IGNORECASE),
    re.compile(r"exception:", re.IGNORECASE),
    re.compile(r"\[✗\]\s+failed", re.IGNORECASE),
)

PROMPT_LINE = re.compile(r"^>\s*$", re.MULTILINE)

EXIT_CODES = {signal.SIGINT: 130, signal.SIGTERM: 143}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AgentStatus(StrEnum):
    STARTING = "starting"
    READY = "ready"
    WORKING = "working"
    STUCK = "stuck"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"


class AgentRunnerError(RuntimeError):
    """Raised when a running agent's pane cannot be driven."""

    def __init__(self, message: str, *, agent_id: str | None = None) -> None:
        super().__init__(message)
        self.agent_id = agent_id


class AgentNotFoundError(AgentRunnerError):
    """Raised for an agent id that is not tracked."""


class AgentNotReadyError(AgentRunnerError):
    """Raised when an agent cannot accept input in its current status."""


class StartupTimeoutError(AgentRunnerError):
    """Raised when no readiness marker appears within the startup window."""


class MonitorTimeoutError(AgentRunnerError):
    """Passed to ``on_error`` when monitoring runs out of time."""


@dataclass(slots=True)
class AgentStartConfig:
    role: Role
    initial_prompt: str
    working_directory: Path
    agent_id: str | None = None
    session_id: str | None = None
    auto_focus: bool | None = None

    @property
    def resolved_id(self) -> str:
        return self.agent_id or self.role.value


class AgentStartError(RuntimeError):
    """Raised when every startup attempt for an agent failed."""

    def __init__(
        self,
        message: str,
        *,
        config: AgentStartConfig,
        cause: BaseException | None,
        attempts: int,
    ) -> None:
        super().__init__(message)
        self.config = config
        self.cause = cause
        self.attempts = attempts


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    backoff_multiplier: float = 2.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=max(1, int(config.max_attempts)),
            initial_delay_seconds=max(0.0, float(config.initial_delay_seconds)),
            max_delay_seconds=max(0.0, float(config.max_delay_seconds)),
            backoff_multiplier=max(1.0, float(config.backoff_multiplier)),
        )

    def delay_after(self, attempt: int) -> float:
        """Backoff before attempt ``attempt + 1``; ``attempt`` counts from 1."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


@dataclass(frozen=True, slots=True)
class AgentSnapshot:
    id: str
    role: Role
    pane: str
    status: AgentStatus
    started_at: datetime
    last_activity: datetime
    current_task: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "pane": self.pane,
            "status": self.status.value,
            "started_at": self.started_at.replace(microsecond=0).isoformat(),
            "last_activity": self.last_activity.replace(microsecond=0).isoformat(),
            "current_task": self.current_task,
        }


@dataclass(frozen=True, slots=True)
class AgentOutput:
    agent_id: str
    content: str
    is_complete: bool
    has_error: bool
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class MonitorOptions:
    poll_interval_seconds: float = 1.0
    timeout_seconds: float | None = None
    on_output: Callable[[AgentOutput], None] | None = None
    on_complete: Callable[[], None] | None = None
    on_error: Callable[[AgentRunnerError], None] | None = None


@dataclass(slots=True)
class _ManagedAgent:
    id: str
    role: Role
    pane: str
    status: AgentStatus = AgentStatus.STARTING
    started_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)
    current_task: str | None = None
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    monitors: set[asyncio.Task[None]] = field(default_factory=set)

    def touch(self) -> None:
        self.last_activity = _utcnow()

    def snapshot(self) -> AgentSnapshot:
        return AgentSnapshot(
            id=self.id,
            role=self.role,
            pane=self.pane,
            status=self.status,
            started_at=self.started_at,
            last_activity=self.last_activity,
            current_task=self.current_task,
        )


class AgentHandle:
    """Returned by ``start`` before the worker is interactive."""

    def __init__(
        self,
        agent: _ManagedAgent,
        ready: Callable[[], Any],
    ) -> None:
        self.id = agent.id
        self.pane = agent.pane
        self.role = agent.role
        self.started_at = agent.started_at
        self.attempts = 1
        self._ready = ready

    async def wait_for_ready(self) -> None:
        await self._ready()


class MonitorHandle:
    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        self.stopped = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def stop(self) -> None:
        if self.stopped.is_set():
            return
        self.stopped.set()
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()


async def _wait_or_timeout(event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to *seconds*; return ``True`` early if *event* is set."""
    try:
        await asyncio.wait_for(event.wait(), timeout=max(0.0, seconds))
    except TimeoutError:
        return False
    return True


def split_utf8_chunks(text: str, max_bytes: int = MAX_CHUNK_BYTES) -> list[str]:
    """Split *text* into pieces of at most *max_bytes* UTF-8 bytes, never inside a character."""
    chunks: list[str] = []
    current: list[str] = []
    size = 0
    for char in text:
        width = len(char.encode("utf-8"))
        if size + width > max_bytes and current:
            chunks.append("".join(current))
            current = []
            size = 0
        current.append(char)
        size += width
    if current:
        chunks.append("".join(current))
    return chunks


def detect_completion(content: str) -> bool:
    return any(marker.search(content) for marker in COMPLETION_MARKERS)


def detect_error(content: str) -> bool:
    return any(marker.search(content) for marker in ERROR_MARKERS)


class AgentManager:
    """Owns the lifecycle of worker processes running in terminal panes."""

    def __init__(
        self,
        host: SessionHost,
        config: AgentsConfig | None = None,
        launcher: ClaudeLauncher | None = None,
        *,
        shell_delay_seconds: float = 0.3,
        chunk_delay_seconds: float = 0.05,
        send_settle_seconds: float = 0.1,
    ) -> None:
        self.host = host
        self.config = config or AgentsConfig()
        self.launcher = launcher or ClaudeLauncher(self.config.command)
        self.shell_delay_seconds = shell_delay_seconds
        self.chunk_delay_seconds = chunk_delay_seconds
        self.send_settle_seconds = send_settle_seconds
        self._agents: dict[str, _ManagedAgent] = {}
        self._exit_handlers_registered = False

    def is_ready_output(self, content: str) -> bool:
        if any(marker in content for marker in self.config.ready_markers):
            return True
        return PROMPT_LINE.search(content) is not None

    async def start(self, config: AgentStartConfig) -> AgentHandle:
        agent_id = config.resolved_id
        existing = self._agents.get(agent_id)
        if existing is not None:
            raise AgentRunnerError(
                f"Agent {agent_id} is already running (status: {existing.status.value})",
                agent_id=agent_id,
            )
        if self.config.cleanup_on_exit and not self._exit_handlers_registered:
            self._register_exit_handlers()

        pane = await self.host.split(self.config.pane_split_percent)
        auto_focus = self.config.auto_focus if config.auto_focus is None else config.auto_focus
        agent = _ManagedAgent(id=agent_id, role=config.role, pane=pane)
        self._agents[agent_id] = agent
        prompt_file: Path | None = None
        try:
            if auto_focus:
                await self.host.focus(pane)
            if config.initial_prompt:
                prompt_file = self._write_prompt_file(agent_id, config.initial_prompt)
            await asyncio.sleep(self.shell_delay_seconds)
            await self._send_line(pane, self.launcher.build_cd(config.working_directory))
            await asyncio.sleep(self.shell_delay_seconds)
            session_id = config.session_id or str(uuid.uuid4())
            await self._send_line(pane, self.launcher.build_command(session_id, prompt_file))
        except Exception:
            agent.status = AgentStatus.ERROR
            self._agents.pop(agent_id, None)
            await self._close_pane_quietly(pane)
            if prompt_file is not None:
                prompt_file.unlink(missing_ok=True)
            raise

        log.info("agent_launched", agent_id=agent_id, role=config.role.value, pane=pane)

        async def _ready() -> None:
            await self._wait_for_ready(agent, prompt_file)

        return AgentHandle(agent, _ready)

    async def start_with_retry(
        self,
        config: AgentStartConfig,
        retry: RetryPolicy | None = None,
    ) -> AgentHandle:
        policy = retry or RetryPolicy()
        last_error: BaseException | None = None
        for attempt in range(1, policy.max_attempts + 1):
            try:
                log.info("agent_start_attempt", role=config.role.value, attempt=attempt)
                handle = await self.start(config)
                handle.attempts = attempt
                return handle
            except Exception as exc:
                last_error = exc
                log.warning(
                    "agent_start_failed",
                    role=config.role.value,
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt < policy.max_attempts:
                    await asyncio.sleep(policy.delay_after(attempt))
        raise AgentStartError(
            f"Failed to start {config.role.value} after {policy.max_attempts} attempts: "
            f"{last_error}",
            config=config,
            cause=last_error,
            attempts=policy.max_attempts,
        )

    async def _wait_for_ready(self, agent: _ManagedAgent, prompt_file: Path | None) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.ready_timeout_seconds
        try:
            while loop.time() < deadline:
                if agent.cancel.is_set():
                    raise AgentRunnerError("Agent startup aborted", agent_id=agent.id)
                try:
                    content = await self.host.capture(agent.pane)
                except SessionHostError as exc:
                    log.debug("ready_capture_failed", agent_id=agent.id, error=str(exc))
                    content = ""
                if self.is_ready_output(content):
                    if await _wait_or_timeout(agent.cancel, self.config.settle_seconds):
                        raise AgentRunnerError("Agent startup aborted", agent_id=agent.id)
                    agent.status = AgentStatus.READY
                    agent.touch()
                    log.info("agent_ready", agent_id=agent.id, pane=agent.pane)
                    return
                await _wait_or_timeout(agent.cancel, self.config.ready_poll_seconds)
            agent.status = AgentStatus.ERROR
            raise StartupTimeoutError(
                f"Agent {agent.id} did not become ready within "
                f"{self.config.ready_timeout_seconds:.1f}s",
                agent_id=agent.id,
            )
        finally:
            if prompt_file is not None:
                prompt_file.unlink(missing_ok=True)

    @staticmethod
    def _write_prompt_file(agent_id: str, prompt: str) -> Path:
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            prefix=f"syzygy-prompt-{agent_id}-",
            suffix=".txt",
            delete=False,
        ) as handle:
            handle.write(prompt)
        return Path(handle.name)

    async def _send_line(self, pane: str, line: str) -> None:
        await self.host.send_literal(pane, line)
        await self.host.send_key(pane, "Enter")

    async def _close_pane_quietly(self, pane: str) -> None:
        try:
            await self.host.close(pane)
        except SessionHostError as exc:
            if exc.is_missing_session:
                log.debug("pane_already_gone", pane=pane)
            else:
                log.warning("pane_close_failed", pane=pane, error=str(exc))

    def _require(self, agent_id: str) -> _ManagedAgent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(f"Agent {agent_id} not found", agent_id=agent_id)
        return agent

    async def send_message(self, agent_id: str, text: str) -> None:
        agent = self._require(agent_id)
        if agent.status not in {AgentStatus.READY, AgentStatus.WORKING}:
            raise AgentNotReadyError(
                f"Agent {agent_id} is not ready (status: {agent.status.value})",
                agent_id=agent_id,
            )
        chunks = split_utf8_chunks(text)
        try:
            for index, chunk in enumerate(chunks):
                if index:
                    await asyncio.sleep(self.chunk_delay_seconds)
                await self.host.send_literal(agent.pane, chunk)
            await self.host.send_key(agent.pane, "Enter")
        except SessionHostError as exc:
            raise AgentRunnerError(
                f"Failed to send message to agent {agent_id}: {exc}", agent_id=agent_id
            ) from exc
        await asyncio.sleep(self.send_settle_seconds)
        agent.status = AgentStatus.WORKING
        agent.touch()
        log.info("message_sent", agent_id=agent_id, chunks=len(chunks), length=len(text))

    async def capture_output(self, agent_id: str) -> AgentOutput:
        agent = self._require(agent_id)
        try:
            content = await self.host.capture(agent.pane)
        except SessionHostError as exc:
            raise AgentRunnerError(
                f"Failed to capture output from agent {agent_id}: {exc}", agent_id=agent_id
            ) from exc
        return AgentOutput(
            agent_id=agent_id,
            content=content,
            is_complete=detect_completion(content),
            has_error=detect_error(content),
        )

    def start_monitoring(self, agent_id: str, options: MonitorOptions) -> MonitorHandle:
        agent = self._require(agent_id)
        handle = MonitorHandle(agent_id)
        task = asyncio.get_running_loop().create_task(self._monitor(agent, options, handle))
        handle._task = task
        agent.monitors.add(task)
        task.add_done_callback(agent.monitors.discard)
        log.info("monitor_started", agent_id=agent_id)
        return handle

    async def _monitor(
        self,
        agent: _ManagedAgent,
        options: MonitorOptions,
        handle: MonitorHandle,
    ) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        baseline: int | None = None
        while not handle.stopped.is_set() and not agent.cancel.is_set():
            try:
                output = await self.capture_output(agent.id)
            except AgentRunnerError as exc:
                self._invoke(options.on_error, agent.id, exc)
                break
            lines = output.content.splitlines()
            if baseline is None:
                baseline = len(lines)
            fresh = "\n".join(lines[baseline:])
            output = AgentOutput(
                agent_id=agent.id,
                content=output.content,
                is_complete=detect_completion(fresh),
                has_error=detect_error(fresh),
            )
            self._invoke(options.on_output, agent.id, output)
            if output.is_complete:
                log.info("monitor_completion_marker", agent_id=agent.id)
                self._invoke(options.on_complete, agent.id)
                break
            if output.has_error:
                log.warning("monitor_error_marker", agent_id=agent.id)
                self._invoke(
                    options.on_error,
                    agent.id,
                    AgentRunnerError("Agent error detected in output", agent_id=agent.id),
                )
                break
            if (
                options.timeout_seconds is not None
                and loop.time() - started >= options.timeout_seconds
            ):
                log.warning("monitor_timeout", agent_id=agent.id, timeout=options.timeout_seconds)
                self._invoke(
                    options.on_error,
                    agent.id,
                    MonitorTimeoutError("Monitoring timeout", agent_id=agent.id),
                )
                break
            if await _wait_or_timeout(handle.stopped, options.poll_interval_seconds):
                break
        handle.stopped.set()

    @staticmethod
    def _invoke(callback: Callable[..., None] | None, agent_id: str, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:
            log.error("monitor_callback_failed", agent_id=agent_id, error=str(exc))

    def check_for_stuck_agents(self) -> list[str]:
        now = _utcnow()
        stuck: list[str] = []
        for agent in self._agents.values():
            if agent.status is not AgentStatus.WORKING:
                continue
            idle = (now - agent.last_activity).total_seconds()
            if idle > self.config.stuck_timeout_seconds:
                agent.status = AgentStatus.STUCK
                stuck.append(agent.id)
                log.warning("agent_stuck", agent_id=agent.id, idle_seconds=round(idle, 1))
        return stuck

    async def stop_agent(self, agent_id: str) -> None:
        agent = self._agents.pop(agent_id, None)
        if agent is None:
            return
        log.info("agent_stopping", agent_id=agent_id)
        agent.cancel.set()
        for task in list(agent.monitors):
            if task is not asyncio.current_task():
                task.cancel()
        await self._close_pane_quietly(agent.pane)
        agent.status = AgentStatus.STOPPED

    async def stop_all(self) -> None:
        log.info("agents_stopping", count=len(self._agents))
        await asyncio.gather(*(self.stop_agent(agent_id) for agent_id in list(self._agents)))

    async def mark_completed(self, agent_id: str) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            return
        agent.status = AgentStatus.COMPLETED
        agent.touch()
        log.info("agent_completed", agent_id=agent_id)
        if not self.config.keep_completed_panes:
            await self.stop_agent(agent_id)

    def reactivate(self, agent_id: str) -> None:
        """Return a completed or stuck agent to ``ready`` so it can take new work."""
        agent = self._require(agent_id)
        if agent.status in {AgentStatus.COMPLETED, AgentStatus.STUCK}:
            agent.status = AgentStatus.READY
            agent.touch()

    def set_current_task(self, agent_id: str, task: str | None) -> None:
        agent = self._agents.get(agent_id)
        if agent is not None:
            agent.current_task = task
            agent.touch()

    def get_agent(self, agent_id: str) -> AgentSnapshot | None:
        agent = self._agents.get(agent_id)
        return agent.snapshot() if agent is not None else None

    def list_agents(self) -> list[AgentSnapshot]:
        return [agent.snapshot() for agent in self._agents.values()]

    async def focus_agent(self, agent_id: str) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            log.warning("focus_unknown_agent", agent_id=agent_id)
            return
        try:
            await self.host.focus(agent.pane)
        except SessionHostError as exc:
            log.warning("focus_failed", agent_id=agent_id, error=str(exc))

    def _close_all_sync(self) -> None:
        for agent in list(self._agents.values()):
            try:
                self.host.close_sync(agent.pane)
            except Exception:
                continue
        self._agents.clear()

    def _register_exit_handlers(self) -> None:
        self._exit_handlers_registered = True
        atexit.register(self._close_all_sync)

        def _on_signal(signum: int, frame: object) -> None:
            _ = frame
            self._close_all_sync()
            sys.exit(EXIT_CODES.get(signal.Signals(signum), 1))

        for signum in EXIT_CODES:
            try:
                signal.signal(signum, _on_signal)
            except ValueError:
                # Only the main thread may install signal handlers.
                log.debug("signal_handler_skipped", signal=signum.name)
