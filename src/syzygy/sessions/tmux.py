from __future__ import annotations

import asyncio
import re
import subprocess

import structlog

from syzygy.sessions.base import SessionHost, SessionHostError

log = structlog.get_logger("tmux")


class TmuxSessionHost(SessionHost):
    def __init__(self, binary: str = "tmux", shell: str = "bash") -> None:
        self.binary = binary
        self.shell = shell

    def build_command(self, args: list[str]) -> list[str]:
        return [self.binary, *args]

    async def _run(self, args: list[str]) -> str:
        command = self.build_command(args)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise SessionHostError(
                f"tmux binary not found: {self.binary}", command=" ".join(args)
            ) from exc
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            error_output = stderr.decode("utf-8", errors="replace").strip()
            raise SessionHostError(
                f"tmux {args[0]} failed: {error_output or 'unknown error'}",
                command=" ".join(args),
                exit_code=process.returncode,
                stderr=error_output,
            )
        return stdout.decode("utf-8", errors="replace").rstrip("\n")

    async def split(self, percent: int = 50) -> str:
        handle = await self._run(
            ["split-window", "-h", "-l", f"{percent}%", "-P", "-F", "#{pane_id}", self.shell]
        )
        if not handle.strip():
            raise SessionHostError("tmux split-window returned no pane id", command="split-window")
        log.info("pane_created", pane=handle.strip())
        return handle.strip()

    async def focus(self, handle: str) -> None:
        await self._run(["select-pane", "-t", handle])

    async def send_literal(self, handle: str, text: str) -> None:
        await self._run(["send-keys", "-t", handle, "-l", text])

    async def send_key(self, handle: str, key: str) -> None:
        await self._run(["send-keys", "-t", handle, key])

    async def capture(self, handle: str) -> str:
        return await self._run(["capture-pane", "-t", handle, "-p", "-J", "-S", "-"])

    async def close(self, handle: str) -> None:
        await self._run(["kill-pane", "-t", handle])
        log.info("pane_closed", pane=handle)

    async def exists(self, name: str) -> bool:
        try:
            await self._run(["has-session", "-t", name])
        except SessionHostError:
            return False
        return True

    async def list_sessions(self, pattern: str | None = None) -> list[str]:
        try:
            output = await self._run(["list-sessions", "-F", "#{session_name}"])
        except SessionHostError as exc:
            if exc.is_missing_session:
                return []
            raise
        sessions = [line for line in output.splitlines() if line]
        if pattern:
            regex = re.compile(pattern)
            sessions = [name for name in sessions if regex.search(name)]
        return sessions

    def close_sync(self, handle: str) -> None:
        subprocess.run(
            self.build_command(["kill-pane", "-t", handle]),
            capture_output=True,
            text=True,
            check=False,
        )
