import asyncio
import re
from datetime import timedelta
from pathlib import Path

import pytest

from syzygy.agents import (
    AgentManager,
    AgentNotFoundError,
    AgentNotReadyError,
    AgentOutput,
    AgentRunnerError,
    AgentStartConfig,
    AgentStartError,
    AgentStatus,
    MonitorOptions,
    MonitorTimeoutError,
    RetryPolicy,
    StartupTimeoutError,
    split_utf8_chunks,
)
from syzygy.config import AgentsConfig
from syzygy.roles import Role
from syzygy.sessions.base import SessionHost, SessionHostError

READY_SCREEN = "Welcome back!\nHow can I help you today?\n"


class FakeSessionHost(SessionHost):
    def __init__(self, screen: str = READY_SCREEN, fail_splits: int = 0) -> None:
        self.default_screen = screen
        self.fail_splits = fail_splits
        self.split_calls = 0
        self.screens: dict[str, list[str]] = {}
        self.literals: dict[str, list[str]] = {}
        self.keys: dict[str, list[str]] = {}
        self.focused: list[str] = []
        self.closed: list[str] = []
        self.closed_sync: list[str] = []

    async def split(self, percent: int = 50) -> str:
        _ = percent
        self.split_calls += 1
        if self.split_calls <= self.fail_splits:
            raise SessionHostError("split failed", command="split-window", exit_code=1)
        return f"%{self.split_calls}"

    async def focus(self, handle: str) -> None:
        self.focused.append(handle)

    async def send_literal(self, handle: str, text: str) -> None:
        self.literals.setdefault(handle, []).append(text)

    async def send_key(self, handle: str, key: str) -> None:
        self.keys.setdefault(handle, []).append(key)

    async def capture(self, handle: str) -> str:
        screens = self.screens.get(handle)
        if not screens:
            return self.default_screen
        return screens.pop(0) if len(screens) > 1 else screens[0]

    async def close(self, handle: str) -> None:
        if handle in self.closed:
            raise SessionHostError("gone", stderr=f"can't find pane: {handle}")
        self.closed.append(handle)

    async def exists(self, name: str) -> bool:
        _ = name
        return True

    async def list_sessions(self, pattern: str | None = None) -> list[str]:
        _ = pattern
        return []

    def close_sync(self, handle: str) -> None:
        self.closed_sync.append(handle)


def _config(**overrides: object) -> AgentsConfig:
    config = AgentsConfig(
        ready_timeout_seconds=1.0,
        ready_poll_seconds=0.01,
        settle_seconds=0.0,
        cleanup_on_exit=False,
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def _manager(host: FakeSessionHost, **overrides: object) -> AgentManager:
    return AgentManager(
        host,
        _config(**overrides),
        shell_delay_seconds=0,
        chunk_delay_seconds=0,
        send_settle_seconds=0,
    )


def _start_config(role: Role = Role.ARCHITECT, **overrides: object) -> AgentStartConfig:
    config = AgentStartConfig(
        role=role,
        initial_prompt="Design the dark mode feature.",
        working_directory=Path("/work/project"),
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


async def _ready(manager: AgentManager, config: AgentStartConfig) -> str:
    handle = await manager.start(config)
    await handle.wait_for_ready()
    return handle.id


def test_ready_waits_for_settle_delay_after_marker() -> None:
    host = FakeSessionHost()
    manager = _manager(host, settle_seconds=0.2)

    async def scenario() -> tuple[AgentStatus | None, AgentStatus | None, float]:
        loop = asyncio.get_running_loop()
        handle = await manager.start(_start_config())
        started = loop.time()
        waiting = asyncio.create_task(handle.wait_for_ready())
        await asyncio.sleep(0.05)
        early = manager.get_agent("architect")
        await waiting
        elapsed = loop.time() - started
        late = manager.get_agent("architect")
        return (early.status if early else None), (late.status if late else None), elapsed

    early, late, elapsed = asyncio.run(scenario())

    assert early is not AgentStatus.READY
    assert late is AgentStatus.READY
    assert elapsed >= 0.19


def test_start_launches_worker_and_becomes_ready() -> None:
    host = FakeSessionHost()
    manager = _manager(host)

    agent_id = asyncio.run(_ready(manager, _start_config()))

    assert agent_id == "architect"
    snapshot = manager.get_agent("architect")
    assert snapshot is not None and snapshot.status is AgentStatus.READY
    assert host.focused == ["%1"]
    cd_line, launch_line = host.literals["%1"]
    assert cd_line == "cd /work/project"
    assert launch_line.startswith("claude --session-id ")
    assert host.keys["%1"] == ["Enter", "Enter"]
    match = re.search(r'"\$\(cat (\S+)\)"', launch_line)
    assert match is not None
    prompt_file = Path(match.group(1))
    assert "syzygy-prompt-architect-" in prompt_file.name
    assert not prompt_file.exists()


def test_bare_prompt_line_counts_as_ready() -> None:
    host = FakeSessionHost(screen="Booting worker\n> \n")
    manager = _manager(host, ready_markers=["never shown"])

    asyncio.run(_ready(manager, _start_config(initial_prompt="")))

    snapshot = manager.get_agent("architect")
    assert snapshot is not None and snapshot.status is AgentStatus.READY


def test_startup_timeout_cleans_prompt_file() -> None:
    host = FakeSessionHost(screen="loading...")
    manager = _manager(host, ready_timeout_seconds=0.05)

    with pytest.raises(StartupTimeoutError):
        asyncio.run(_ready(manager, _start_config()))

    launch_line = host.literals["%1"][1]
    match = re.search(r'"\$\(cat (\S+)\)"', launch_line)
    assert match is not None and not Path(match.group(1)).exists()
    snapshot = manager.get_agent("architect")
    assert snapshot is not None and snapshot.status is AgentStatus.ERROR


def test_start_with_retry_reports_attempts() -> None:
    host = FakeSessionHost(fail_splits=2)
    manager = _manager(host)
    policy = RetryPolicy(max_attempts=3, initial_delay_seconds=0, max_delay_seconds=0)

    async def scenario() -> int:
        handle = await manager.start_with_retry(_start_config(), policy)
        await handle.wait_for_ready()
        return handle.attempts

    assert asyncio.run(scenario()) == 3
    assert host.split_calls == 3


def test_start_with_retry_gives_up_after_max_attempts() -> None:
    host = FakeSessionHost(fail_splits=10)
    manager = _manager(host)
    policy = RetryPolicy(max_attempts=3, initial_delay_seconds=0, max_delay_seconds=0)

    with pytest.raises(AgentStartError) as excinfo:
        asyncio.run(manager.start_with_retry(_start_config(role=Role.DEVELOPER), policy))

    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.cause, SessionHostError)
    assert excinfo.value.config.role is Role.DEVELOPER
    assert host.split_calls == 3
    assert manager.list_agents() == []


def test_retry_delays_back_off_up_to_the_cap() -> None:
    policy = RetryPolicy(initial_delay_seconds=1, max_delay_seconds=10, backoff_multiplier=2)

    assert [policy.delay_after(attempt) for attempt in range(1, 6)] == [1, 2, 4, 8, 10]


def test_failed_launch_closes_pane_and_forgets_agent() -> None:
    class BrokenSend(FakeSessionHost):
        async def send_literal(self, handle: str, text: str) -> None:
            raise SessionHostError("send failed")

    host = BrokenSend()
    manager = _manager(host)

    with pytest.raises(SessionHostError):
        asyncio.run(manager.start(_start_config()))

    assert host.closed == ["%1"]
    assert manager.get_agent("architect") is None


def test_duplicate_live_agent_id_is_rejected() -> None:
    manager = _manager(FakeSessionHost())

    async def scenario() -> None:
        await _ready(manager, _start_config())
        await manager.start(_start_config())

    with pytest.raises(AgentRunnerError, match="already running"):
        asyncio.run(scenario())


def test_split_utf8_chunks_respects_byte_limit() -> None:
    ascii_chunks = split_utf8_chunks("a" * 9000)
    wide_chunks = split_utf8_chunks("é" * 2500)

    assert [len(chunk) for chunk in ascii_chunks] == [4000, 4000, 1000]
    assert [len(chunk.encode("utf-8")) for chunk in wide_chunks] == [4000, 1000]
    assert "".join(wide_chunks) == "é" * 2500
    assert split_utf8_chunks("") == []


def test_send_message_chunks_then_presses_enter() -> None:
    host = FakeSessionHost()
    manager = _manager(host)

    async def scenario() -> None:
        await _ready(manager, _start_config())
        await manager.send_message("architect", "x" * 8500)

    asyncio.run(scenario())

    literals = host.literals["%1"][2:]
    assert [len(chunk) for chunk in literals] == [4000, 4000, 500]
    assert host.keys["%1"][-1] == "Enter"
    snapshot = manager.get_agent("architect")
    assert snapshot is not None and snapshot.status is AgentStatus.WORKING


def test_send_message_requires_ready_agent() -> None:
    manager = _manager(FakeSessionHost())

    async def scenario() -> None:
        await manager.start(_start_config())
        await manager.send_message("architect", "too early")

    with pytest.raises(AgentNotReadyError):
        asyncio.run(scenario())
    with pytest.raises(AgentNotFoundError):
        asyncio.run(manager.send_message("nobody", "hello"))


def test_send_failure_becomes_runner_error() -> None:
    host = FakeSessionHost()
    manager = _manager(host)

    async def scenario() -> None:
        await _ready(manager, _start_config())

        async def broken(handle: str, key: str) -> None:
            raise SessionHostError("pane vanished")

        host.send_key = broken  # type: ignore[method-assign]
        await manager.send_message("architect", "hello")

    with pytest.raises(AgentRunnerError, match="Failed to send"):
        asyncio.run(scenario())


def test_monitor_ignores_old_output_and_reports_new_completion() -> None:
    host = FakeSessionHost()
    manager = _manager(host)
    outputs: list[AgentOutput] = []
    completed = asyncio.Event()

    async def scenario() -> bool:
        await _ready(manager, _start_config())
        host.screens["%1"] = [
            "earlier run: Task complete\n> ",
            "earlier run: Task complete\n> \nworking...",
            "earlier run: Task complete\n> \nworking...\nTask completed successfully",
        ]
        handle = manager.start_monitoring(
            "architect",
            MonitorOptions(
                poll_interval_seconds=0.01,
                on_output=outputs.append,
                on_complete=completed.set,
            ),
        )
        await asyncio.wait_for(completed.wait(), timeout=2)
        handle.stop()
        handle.stop()
        return handle.is_running

    assert asyncio.run(scenario()) is False
    assert outputs[0].is_complete is False
    assert outputs[-1].is_complete is True


def test_monitor_reports_error_marker_and_timeout() -> None:
    host = FakeSessionHost()
    manager = _manager(host)
    errors: list[AgentRunnerError] = []

    async def scenario() -> None:
        await _ready(manager, _start_config())
        await _ready(manager, _start_config(role=Role.DOCUMENTER))
        host.screens["%1"] = ["> ", "> \nError: could not write file"]
        first = asyncio.Event()
        second = asyncio.Event()

        def on_error(error: AgentRunnerError) -> None:
            errors.append(error)
            (second if first.is_set() else first).set()

        manager.start_monitoring(
            "architect", MonitorOptions(poll_interval_seconds=0.01, on_error=on_error)
        )
        await asyncio.wait_for(first.wait(), timeout=2)
        manager.start_monitoring(
            "documenter",
            MonitorOptions(poll_interval_seconds=0.01, timeout_seconds=0.05, on_error=on_error),
        )
        await asyncio.wait_for(second.wait(), timeout=2)

    asyncio.run(scenario())

    assert not isinstance(errors[0], MonitorTimeoutError)
    assert isinstance(errors[1], MonitorTimeoutError)
    assert errors[1].agent_id == "documenter"


def test_stuck_agents_are_flagged() -> None:
    manager = _manager(FakeSessionHost(), stuck_timeout_seconds=600)

    async def scenario() -> list[str]:
        await _ready(manager, _start_config())
        await _ready(manager, _start_config(role=Role.DOCUMENTER))
        await manager.send_message("architect", "design it")
        await manager.send_message("documenter", "document it")
        manager._agents["architect"].last_activity -= timedelta(minutes=11)
        return manager.check_for_stuck_agents()

    assert asyncio.run(scenario()) == ["architect"]
    snapshot = manager.get_agent("architect")
    assert snapshot is not None and snapshot.status is AgentStatus.STUCK


def test_stop_agent_cancels_monitor_and_tolerates_missing_pane() -> None:
    host = FakeSessionHost()
    manager = _manager(host)

    async def scenario() -> bool:
        await _ready(manager, _start_config())
        handle = manager.start_monitoring("architect", MonitorOptions(poll_interval_seconds=10))
        await asyncio.sleep(0)
        host.closed.append("%1")
        await manager.stop_agent("architect")
        await manager.stop_agent("architect")
        await asyncio.sleep(0.05)
        return handle.is_running

    assert asyncio.run(scenario()) is False
    assert manager.get_agent("architect") is None


def test_mark_completed_keeps_or_closes_pane() -> None:
    host = FakeSessionHost()
    keeper = _manager(host)
    closer = _manager(host, keep_completed_panes=False)

    async def scenario() -> None:
        await _ready(keeper, _start_config())
        await _ready(closer, _start_config(role=Role.DOCUMENTER))
        await keeper.mark_completed("architect")
        await closer.mark_completed("documenter")

    asyncio.run(scenario())

    snapshot = keeper.get_agent("architect")
    assert snapshot is not None and snapshot.status is AgentStatus.COMPLETED
    assert closer.get_agent("documenter") is None
    assert host.closed == ["%2"]

    keeper.reactivate("architect")
    snapshot = keeper.get_agent("architect")
    assert snapshot is not None and snapshot.status is AgentStatus.READY


def test_stop_all_and_exit_cleanup_close_every_pane() -> None:
    host = FakeSessionHost()
    manager = _manager(host)

    async def scenario() -> None:
        await _ready(manager, _start_config())
        await _ready(manager, _start_config(role=Role.DEVELOPER, agent_id="developer-1"))
        manager.set_current_task("developer-1", "task-1")
        snapshot = manager.get_agent("developer-1")
        assert snapshot is not None and snapshot.to_dict()["current_task"] == "task-1"

    asyncio.run(scenario())
    manager._close_all_sync()

    assert sorted(host.closed_sync) == ["%1", "%2"]
    assert manager.list_agents() == []

    other = _manager(host)
    asyncio.run(_ready(other, _start_config()))
    asyncio.run(other.stop_all())
    assert other.list_agents() == []
