from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import click

from syzygy.config import CONFIG_FILE_NAME, SyzygyConfig, load_config, save_config
from syzygy.logging import configure_logging
from syzygy.orchestrator import Orchestrator
from syzygy.sanitize import FeatureNameError, create_slug, validate_feature_name
from syzygy.sessions import TmuxSessionHost
from syzygy.stages import CorruptLockError, LockError, LockManager, StageError, StagePipeline
from syzygy.workflow import WorkflowState

RUN_ERRORS = (RuntimeError, ValueError, OSError)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load(config_value: str) -> tuple[Path, SyzygyConfig]:
    repo_root = Path.cwd().resolve()
    try:
        config = load_config(_resolve_config_path(repo_root, config_value))
    except (ValueError, TypeError) as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc
    json_file = Path(config.logging.json_file) if config.logging.json_file else None
    if json_file is not None and not json_file.is_absolute():
        json_file = repo_root / json_file
    configure_logging(config.logging.level, json_file)
    return repo_root, config


def _open_pipeline(repo_root: Path, config: SyzygyConfig) -> StagePipeline:
    pipeline = StagePipeline()
    try:
        pipeline.initialize(repo_root / config.workspace.root)
    except StageError as exc:
        raise click.ClickException(str(exc)) from exc
    return pipeline


def _build_orchestrator(repo_root: Path, config: SyzygyConfig) -> Orchestrator:
    return Orchestrator(config, repo_root, TmuxSessionHost())


def _echo_outcome(state: WorkflowState, status: dict[str, Any]) -> None:
    if state is WorkflowState.ERROR:
        error = status.get("error") or {}
        raise click.ClickException(
            f"Workflow failed at stage {error.get('stage', '?')} "
            f"({error.get('agent_id', '?')}): {error.get('message', 'unknown error')}"
        )
    click.echo(f"Workflow {status.get('feature', '')} finished in state {state.value}")


async def _run_workflow(
    orchestrator: Orchestrator, feature: str, brief: str | None
) -> tuple[WorkflowState, dict[str, Any]]:
    await orchestrator.start_workflow(feature, brief)
    try:
        state = await orchestrator.wait_until_done()
        return state, orchestrator.status()
    finally:
        await orchestrator.stop_workflow()


async def _resume_workflow(orchestrator: Orchestrator) -> tuple[WorkflowState, dict[str, Any]]:
    detected = await orchestrator.resume_workflow()
    if not detected.has_pending_work:
        return WorkflowState.IDLE, {}
    try:
        state = await orchestrator.wait_until_done()
        return state, orchestrator.status()
    finally:
        await orchestrator.stop_workflow()


@click.group()
@click.version_option(package_name="syzygy")
def cli() -> None:
    """Syzygy CLI."""


@cli.command("init")
@click.option("--developers", type=click.IntRange(1, 10), default=None)
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def init_command(developers: int | None, config_value: str) -> None:
    repo_root, config = _load(config_value)
    if developers is not None:
        config.agents.num_developers = developers
    config_path = _resolve_config_path(repo_root, config_value)
    save_config(config_path, config)
    pipeline = _open_pipeline(repo_root, config)

    click.echo(f"Initialized syzygy in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Stages: {pipeline.root / 'stages'}")


@cli.command("run")
@click.argument("feature")
@click.option("--brief", default=None, help="Short description handed to the product manager.")
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def run_command(feature: str, brief: str | None, config_value: str) -> None:
    repo_root, config = _load(config_value)
    orchestrator = _build_orchestrator(repo_root, config)
    try:
        state, status = asyncio.run(_run_workflow(orchestrator, feature, brief))
    except RUN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_outcome(state, status)


@cli.command("resume")
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def resume_command(config_value: str) -> None:
    repo_root, config = _load(config_value)
    orchestrator = _build_orchestrator(repo_root, config)
    try:
        state, status = asyncio.run(_resume_workflow(orchestrator))
    except RUN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if not status:
        click.echo("No interrupted workflow found.")
        return
    _echo_outcome(state, status)


@cli.command("status")
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def status_command(config_value: str) -> None:
    repo_root, config = _load(config_value)
    pipeline = _open_pipeline(repo_root, config)
    locks = LockManager()
    stages: dict[str, list[dict[str, Any]]] = {}
    for stage, paths in pipeline.list_all_pending().items():
        entries = []
        for path in paths:
            try:
                info = locks.info(path)
                claimed_by = info.agent_id if info else None
            except CorruptLockError:
                claimed_by = "<corrupt lock>"
            entries.append({"name": path.name, "claimed_by": claimed_by})
        stages[stage.value] = entries
    payload = {"root": str(pipeline.root), "pending": stages}
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("reap-locks")
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def reap_locks_command(config_value: str) -> None:
    repo_root, config = _load(config_value)
    pipeline = _open_pipeline(repo_root, config)
    paths = [path for paths in pipeline.list_all_pending().values() for path in paths]
    try:
        reaped = LockManager().reap_stale(paths)
    except LockError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Removed {reaped} stale lock(s).")


@cli.command("slug")
@click.argument("name")
def slug_command(name: str) -> None:
    try:
        click.echo(create_slug(validate_feature_name(name)))
    except FeatureNameError as exc:
        raise click.ClickException(str(exc)) from exc
