from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from conductor import __version__
from conductor.config import ConductorConfig, load_config, save_config
from conductor.errors import ConductorError, GraphError
from conductor.graph import errors_only, load_graph, render_graph, validate
from conductor.graph.model import Graph
from conductor.logs import LogManager, list_log_runs
from conductor.runners import ProcessPhaseRunner
from conductor.scheduler import (
    ExecutionReport,
    Scheduler,
    effective_config,
    plan,
    resolve_dir,
)
from conductor.state import ExecutionStateStore

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ConductorConfig


def _configure_logging(verbose: bool) -> None:
    logger = logging.getLogger("conductor")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    logger.addHandler(handler)
    logger.propagate = False


def _click_error(exc: ConductorError) -> click.ClickException:
    error = click.ClickException(str(exc))
    error.exit_code = exc.exit_code
    return error


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConductorError as exc:
        raise _click_error(exc) from exc
    return Runtime(repo_root=repo_root, config_path=config_path, config=config)


def _load_graph(dag_file: str) -> Graph:
    try:
        return load_graph(Path(dag_file))
    except GraphError as exc:
        raise _click_error(exc) from exc


def _print_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    feature = event.get("feature")
    if name == "feature_started":
        click.echo(f"→ {feature} started")
    elif name == "feature_completed":
        click.echo(f"✓ {feature} completed")
    elif name == "feature_failed":
        click.echo(f"✗ {feature} failed ({event.get('kind')}): {event.get('error')}")
    elif name == "feature_blocked":
        click.echo(f"- {feature} blocked by {event.get('blocked_by')}")
    elif name == "feature_awaiting_resolution":
        click.echo(f"! {feature} awaiting conflict resolution: {', '.join(event['conflicts'])}")
    elif name == "run_timeout":
        click.echo("Run timeout reached; stopping running features.")


def _print_report(report: ExecutionReport) -> None:
    click.echo("")
    click.echo(f"Run ID: {report.run_id}")
    click.echo(f"Base branch: {report.base_branch}")
    for feature_id, status in report.statuses.items():
        line = f"  {feature_id:<32} {status}"
        if feature_id in report.errors:
            line += f"  {report.errors[feature_id]}"
        elif feature_id in report.blocked_by:
            line += f"  (blocked by {report.blocked_by[feature_id]})"
        elif feature_id in report.conflicts:
            line += f"  (conflicts: {', '.join(report.conflicts[feature_id])})"
        click.echo(line)
    click.echo(
        f"Completed {len(report.completed)}/{len(report.statuses)}, "
        f"failed {len(report.failed)}, blocked {len(report.blocked)}, "
        f"awaiting resolution {len(report.awaiting_resolution)}, pending {len(report.pending)}"
    )
    if report.timed_out:
        click.echo("Run timed out.")


@click.group()
@click.version_option(__version__, prog_name="conductor")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Run dependency graphs of feature workflows in parallel git worktrees."""
    _configure_logging(verbose)


@cli.command("init")
@click.option("--phase-command", default=None, help="Command template run for every phase.")
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def init_command(phase_command: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    config = runtime.config
    if phase_command:
        config.runner.phase_command = phase_command
    save_config(runtime.config_path, config)
    click.echo(f"Wrote {runtime.config_path}")


@cli.command("validate")
@click.argument("dag_file", type=click.Path(dir_okay=False))
def validate_command(dag_file: str) -> None:
    graph = _load_graph(dag_file)
    issues = validate(graph)
    for issue in issues:
        click.echo(str(issue))
    errors = errors_only(issues)
    if errors:
        error = click.ClickException(f"{len(errors)} validation error(s) in {dag_file}")
        error.exit_code = GraphError.exit_code
        raise error
    click.echo(f"{dag_file} is valid ({len(graph.feature_ids())} features).")


@cli.command("visualize")
@click.argument("dag_file", type=click.Path(dir_okay=False))
def visualize_command(dag_file: str) -> None:
    click.echo(render_graph(_load_graph(dag_file)), nl=False)


@cli.command("run")
@click.argument("dag_file", type=click.Path(dir_okay=False))
@click.option("--dry-run", is_flag=True, default=False, help="Show the dispatch order only.")
@click.option("--parallel/--sequential", default=True, show_default=True)
@click.option("--max-parallel", type=click.IntRange(min=1), default=None)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def run_command(
    dag_file: str,
    dry_run: bool,
    parallel: bool,
    max_parallel: int | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    graph = _load_graph(dag_file)
    try:
        config = effective_config(runtime.config, graph)
        config = config.with_execution(max_parallel=max_parallel if parallel else 1)
        if dry_run:
            waves = plan(graph)
            click.echo(f"Dry run for {graph.name} (max_parallel={config.execution.max_parallel})")
            for number, wave in enumerate(waves, start=1):
                click.echo(f"  wave {number}: {', '.join(wave)}")
            return
        if not config.runner.phase_command:
            raise click.ClickException(
                f"runner.phase_command is not set in {runtime.config_path}; nothing to execute."
            )
        runner = ProcessPhaseRunner(
            config.runner.phase_command,
            task_command=config.runner.task_command,
            list_tasks_command=config.runner.list_tasks_command,
            output_format=config.runner.output_format,
            stop_grace_seconds=config.execution.stop_grace_seconds,
            timeout_seconds=config.runner.timeout_seconds,
        )
        scheduler = Scheduler(
            graph, config, runner, runtime.repo_root, event_hook=_print_event
        )
        report = asyncio.run(scheduler.run())
    except ConductorError as exc:
        raise _click_error(exc) from exc

    _print_report(report)
    if report.exit_code:
        click.get_current_context().exit(report.exit_code)


@cli.command("status")
@click.argument("run_id", required=False)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def status_command(run_id: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    store = ExecutionStateStore(resolve_dir(runtime.repo_root, runtime.config.execution.state_dir))
    runs = store.list_runs()
    if run_id is None:
        if not runs:
            click.echo("No runs recorded.")
            return
        run_id = runs[-1]
    payload = store.load_run(run_id)
    if payload is None:
        raise click.ClickException(f"Run not found: {run_id}")
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("logs")
@click.argument("run_id", required=False)
@click.argument("feature_id", required=False)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def logs_command(run_id: str | None, feature_id: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    execution = runtime.config.execution
    log_dir = resolve_dir(runtime.repo_root, execution.log_dir)
    if run_id is None:
        runs = list_log_runs(log_dir)
        if not runs:
            click.echo("No logs recorded.")
        for name in runs:
            click.echo(name)
        return
    manager = LogManager(log_dir, execution.max_log_size_bytes(), run_id)
    if feature_id is None:
        features = manager.list_features()
        if not features:
            raise click.ClickException(f"No logs for run {run_id}")
        for name in features:
            click.echo(name)
        return
    if not manager.log_path(feature_id).exists():
        raise click.ClickException(f"No log for {feature_id} in run {run_id}")
    click.echo(manager.read(feature_id), nl=False)


@cli.command("reset")
@click.argument("feature_id")
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def reset_command(feature_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    store = ExecutionStateStore(resolve_dir(runtime.repo_root, runtime.config.execution.state_dir))
    removed = store.reset_feature(feature_id)
    if not removed:
        click.echo(f"No execution state recorded for {feature_id}.")
        return
    click.echo(f"Reset {', '.join(removed)} state for {feature_id}.")
