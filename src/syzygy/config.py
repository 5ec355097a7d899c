from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

LogLevel = Literal["debug", "info", "warning", "error"]

CONFIG_FILE_NAME = "syzygy.toml"

DEFAULT_READY_MARKERS = [
    "Claude Code",
    "How can I help",
    "What would you like to work on?",
    "claude>",
]


class ConfigError(ValueError):
    """Raised when a configuration value is out of range."""


@dataclass(slots=True)
class WorkspaceConfig:
    root: str = ".syzygy"


@dataclass(slots=True)
class AgentsConfig:
    num_developers: int = 1
    command: str = "claude"
    ready_markers: list[str] = field(default_factory=lambda: list(DEFAULT_READY_MARKERS))
    ready_timeout_seconds: float = 30.0
    ready_poll_seconds: float = 0.5
    settle_seconds: float = 0.5
    stuck_timeout_seconds: float = 600.0
    keep_completed_panes: bool = True
    cleanup_on_exit: bool = True
    auto_focus: bool = True
    pane_split_percent: int = 50


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    backoff_multiplier: float = 2.0


@dataclass(slots=True)
class WatcherConfig:
    stability_seconds: float = 0.1


@dataclass(slots=True)
class MonitorConfig:
    poll_interval_seconds: float = 2.0
    work_timeout_seconds: float = 1800.0
    stuck_check_interval_seconds: float = 30.0


@dataclass(slots=True)
class IntakeConfig:
    poll_interval_seconds: float = 1.0
    timeout_seconds: float = 1800.0


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "info"
    json_file: str = ""


@dataclass(slots=True)
class SyzygyConfig:
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    intake: IntakeConfig = field(default_factory=IntakeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> SyzygyConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> SyzygyConfig:
        config = cls(
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            retry=RetryConfig(**data.get("retry", {})),
            watcher=WatcherConfig(**data.get("watcher", {})),
            monitor=MonitorConfig(**data.get("monitor", {})),
            intake=IntakeConfig(**data.get("intake", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )
        config.validate()
        return config

    def validate(self) -> None:
        if not 1 <= self.agents.num_developers <= 10:
            raise ConfigError(
                f"agents.num_developers must be between 1 and 10, got {self.agents.num_developers}"
            )
        if self.retry.max_attempts < 1:
            raise ConfigError("retry.max_attempts must be at least 1")
        if self.logging.level not in {"debug", "info", "warning", "error"}:
            raise ConfigError(f"Unsupported log level: {self.logging.level}")
        if not self.workspace.root.strip():
            raise ConfigError("workspace.root must not be empty")

    def to_dict(self) -> dict:
        return {
            "workspace": {"root": self.workspace.root},
            "agents": {
                "num_developers": self.agents.num_developers,
                "command": self.agents.command,
                "ready_markers": list(self.agents.ready_markers),
                "ready_timeout_seconds": self.agents.ready_timeout_seconds,
                "ready_poll_seconds": self.agents.ready_poll_seconds,
                "settle_seconds": self.agents.settle_seconds,
                "stuck_timeout_seconds": self.agents.stuck_timeout_seconds,
                "keep_completed_panes": self.agents.keep_completed_panes,
                "cleanup_on_exit": self.agents.cleanup_on_exit,
                "auto_focus": self.agents.auto_focus,
                "pane_split_percent": self.agents.pane_split_percent,
            },
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "initial_delay_seconds": self.retry.initial_delay_seconds,
                "max_delay_seconds": self.retry.max_delay_seconds,
                "backoff_multiplier": self.retry.backoff_multiplier,
            },
            "watcher": {"stability_seconds": self.watcher.stability_seconds},
            "monitor": {
                "poll_interval_seconds": self.monitor.poll_interval_seconds,
                "work_timeout_seconds": self.monitor.work_timeout_seconds,
                "stuck_check_interval_seconds": self.monitor.stuck_check_interval_seconds,
            },
            "intake": {
                "poll_interval_seconds": self.intake.poll_interval_seconds,
                "timeout_seconds": self.intake.timeout_seconds,
            },
            "logging": {
                "level": self.logging.level,
                "json_file": self.logging.json_file,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: SyzygyConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["workspace", "agents", "retry", "watcher", "monitor", "intake", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> SyzygyConfig:
    if not path.exists():
        return SyzygyConfig.default()
    return SyzygyConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: SyzygyConfig) -> None:
    config.validate()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
