from __future__ import annotations

import shlex
from pathlib import Path


class ClaudeLauncher:
    """Builds the shell line that starts an interactive worker in a pane."""

    def __init__(self, binary: str = "claude") -> None:
        self.binary = binary

    def build_command(self, session_id: str, prompt_file: Path | None = None) -> str:
        command = f"{shlex.quote(self.binary)} --session-id {shlex.quote(session_id)}"
        if prompt_file is not None:
            # Read by the shell, never typed into the pane.
            command += f' "$(cat {shlex.quote(str(prompt_file))})"'
        return command

    def build_cd(self, working_directory: Path) -> str:
        return f"cd {shlex.quote(str(working_directory))}"
