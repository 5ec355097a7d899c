import tomllib
from pathlib import Path

import pytest

from syzygy import __version__
from syzygy.config import (
    DEFAULT_READY_MARKERS,
    ConfigError,
    SyzygyConfig,
    dumps_toml,
    load_config,
    save_config,
)


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "syzygy.toml"
    config = SyzygyConfig.default()
    config.workspace.root = ".pipeline"
    config.agents.num_developers = 3
    config.agents.ready_markers = ["Ready>", "How can I help"]
    config.agents.keep_completed_panes = False
    config.retry.max_attempts = 5
    config.retry.initial_delay_seconds = 0.25
    config.monitor.work_timeout_seconds = 90
    config.intake.timeout_seconds = 120.5
    config.logging.level = "debug"
    config.logging.json_file = "logs/syzygy.jsonl"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.workspace.root == ".pipeline"
    assert loaded.agents.num_developers == 3
    assert loaded.agents.ready_markers == ["Ready>", "How can I help"]
    assert loaded.agents.keep_completed_panes is False
    assert loaded.agents.cleanup_on_exit is True
    assert loaded.retry.max_attempts == 5
    assert loaded.retry.initial_delay_seconds == 0.25
    assert loaded.monitor.work_timeout_seconds == 90
    assert loaded.intake.timeout_seconds == 120.5
    assert loaded.logging.level == "debug"
    assert loaded.logging.json_file == "logs/syzygy.jsonl"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.workspace.root == ".syzygy"
    assert config.agents.num_developers == 1
    assert config.agents.command == "claude"
    assert config.agents.ready_markers == DEFAULT_READY_MARKERS
    assert config.agents.ready_timeout_seconds == 30
    assert config.agents.stuck_timeout_seconds == 600
    assert config.retry.max_attempts == 3
    assert config.retry.max_delay_seconds == 10
    assert config.watcher.stability_seconds == 0.1
    assert config.intake.timeout_seconds == 1800


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(SyzygyConfig.default())

    for section in ("workspace", "agents", "retry", "watcher", "monitor", "intake", "logging"):
        assert f"[{section}]" in rendered
    assert "ready_timeout_seconds = 30.0" in rendered
    assert "num_developers = 1" in rendered
    assert "keep_completed_panes = true" in rendered
    assert tomllib.loads(rendered)["agents"]["ready_markers"] == DEFAULT_READY_MARKERS


def test_out_of_range_developer_count_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "syzygy.toml"
    config_path.write_text("[agents]\nnum_developers = 11\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="num_developers"):
        load_config(config_path)


def test_save_config_validates_before_writing(tmp_path: Path) -> None:
    config = SyzygyConfig.default()
    config.logging.level = "verbose"  # type: ignore[assignment]
    config_path = tmp_path / "nested" / "syzygy.toml"

    with pytest.raises(ConfigError):
        save_config(config_path, config)
    assert not config_path.exists()


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
