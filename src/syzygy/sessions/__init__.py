from syzygy.sessions.base import SessionHost, SessionHostError
from syzygy.sessions.claude import ClaudeLauncher
from syzygy.sessions.tmux import TmuxSessionHost

__all__ = [
    "ClaudeLauncher",
    "SessionHost",
    "SessionHostError",
    "TmuxSessionHost",
]
