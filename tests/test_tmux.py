import asyncio
from pathlib import Path

import pytest

from syzygy.sessions import ClaudeLauncher, SessionHostError, TmuxSessionHost


class RecordingTmux(TmuxSessionHost):
    def __init__(
        self,
        outputs: dict[str, str] | None = None,
        error: SessionHostError | None = None,
    ) -> None:
        super().__init__()
        self.calls: list[list[str]] = []
        self.outputs = outputs or {}
        self.error = error

    async def _run(self, args: list[str]) -> str:
        self.calls.append(args)
        if self.error is not None:
            raise self.error
        return self.outputs.get(args[0], "")


def test_pane_commands_are_built_for_tmux() -> None:
    host = RecordingTmux(outputs={"split-window": "%7\n", "capture-pane": "hello"})

    async def scenario() -> tuple[str, str]:
        pane = await host.split(40)
        await host.focus(pane)
        await host.send_literal(pane, "echo 'hi'; Enter")
        await host.send_key(pane, "Enter")
        output = await host.capture(pane)
        await host.close(pane)
        return pane, output

    pane, output = asyncio.run(scenario())

    assert pane == "%7"
    assert output == "hello"
    assert host.calls == [
        ["split-window", "-h", "-l", "40%", "-P", "-F", "#{pane_id}", "bash"],
        ["select-pane", "-t", "%7"],
        ["send-keys", "-t", "%7", "-l", "echo 'hi'; Enter"],
        ["send-keys", "-t", "%7", "Enter"],
        ["capture-pane", "-t", "%7", "-p", "-J", "-S", "-"],
        ["kill-pane", "-t", "%7"],
    ]


def test_split_without_pane_id_is_an_error() -> None:
    host = RecordingTmux(outputs={"split-window": "  "})

    with pytest.raises(SessionHostError):
        asyncio.run(host.split())


def test_list_sessions_filters_and_tolerates_missing_server() -> None:
    host = RecordingTmux(outputs={"list-sessions": "syzygy-pm\nsyzygy-dev-1\nscratch\n"})
    assert asyncio.run(host.list_sessions(r"^syzygy-")) == ["syzygy-pm", "syzygy-dev-1"]

    gone = RecordingTmux(
        error=SessionHostError("failed", stderr="no server running on /tmp/tmux-0/default")
    )
    assert asyncio.run(gone.list_sessions()) == []
    assert asyncio.run(gone.exists("syzygy-pm")) is False


def test_missing_binary_raises_session_host_error() -> None:
    host = TmuxSessionHost(binary="syzygy-no-such-tmux-binary")

    with pytest.raises(SessionHostError, match="not found"):
        asyncio.run(host.capture("%1"))


def test_missing_session_detection() -> None:
    assert SessionHostError("x", stderr="can't find pane: %9").is_missing_session is True
    assert SessionHostError("x", stderr="permission denied").is_missing_session is False


def test_launcher_reads_prompt_through_the_shell() -> None:
    launcher = ClaudeLauncher()

    command = launcher.build_command("1234", Path("/tmp/syzygy-prompt-architect-1.txt"))

    assert command == 'claude --session-id 1234 "$(cat /tmp/syzygy-prompt-architect-1.txt)"'
    assert launcher.build_command("1234") == "claude --session-id 1234"
    assert launcher.build_cd(Path("/work/my repo")) == "cd '/work/my repo'"
