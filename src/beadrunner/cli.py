from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click

from beadrunner import __version__
from beadrunner.config import (
    DEFAULT_CONFIG_PATH,
    ConfigError,
    RunnerConfig,
    load_config,
    save_config,
)
from beadrunner.hooks import CommandHooks
from beadrunner.runner import EXIT_INTERRUPTED, Runner, StopSentinel
from beadrunner.tracker import BeadsTaskSource, TaskSourceError
from beadrunner.usage import AdmissionController
from beadrunner.workers import ClaudeWorker


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load(repo_root: Path, config_value: str) -> tuple[Path, RunnerConfig]:
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    return config_path, config


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="  (%(message)s)",
    )


def build_runner(repo_root: Path, config: RunnerConfig, *, yolo: bool) -> Runner:
    return Runner(
        config,
        BeadsTaskSource(repo_root, binary=config.tracker.binary),
        ClaudeWorker(binary=config.worker.binary, working_directory=repo_root),
        AdmissionController(config.usage),
        working_directory=repo_root,
        yolo=yolo,
        hooks=CommandHooks(config.hooks, repo_root),
    )


@click.group()
@click.version_option(version=__version__, prog_name="beadrunner")
@click.option("--verbose", is_flag=True, default=False, help="Show debug diagnostics.")
def cli(verbose: bool) -> None:
    """Run beads tasks sequentially in fresh Claude sessions."""
    _configure_logging(verbose)


@cli.command("run")
@click.option(
    "--yolo",
    is_flag=True,
    default=False,
    help="Skip ALL permission prompts instead of the scoped permission set.",
)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_PATH, show_default=True)
def run_command(yolo: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path, config = _load(repo_root, config_value)
    if config_path.exists():
        click.echo(f"Loading config: {config_path}")
    runner = build_runner(repo_root, config, yolo=yolo)
    try:
        summary = asyncio.run(runner.run())
    except TaskSourceError as exc:
        raise click.ClickException(str(exc)) from exc
    except (KeyboardInterrupt, asyncio.CancelledError):
        raise SystemExit(EXIT_INTERRUPTED) from None
    finally:
        runner.admission.close()
    raise SystemExit(summary.exit_code)


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_PATH, show_default=True)
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing file.")
def init_command(config_value: str, force: bool) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    if config_path.exists() and not force:
        raise click.ClickException(f"Config already exists: {config_path}")
    save_config(config_path, RunnerConfig.default())
    click.echo(f"Wrote default config: {config_path}")


@cli.command("stop")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_PATH, show_default=True)
def stop_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    _, config = _load(repo_root, config_value)
    StopSentinel(repo_root / config.runner.stop_file).request()
    click.echo("Stop requested; the runner exits after the current task finishes.")


@cli.command("usage")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_PATH, show_default=True)
def usage_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    _, config = _load(repo_root, config_value)
    with AdmissionController(config.usage) as admission:
        snapshot = admission.fetch_snapshot()
    if snapshot is None:
        raise click.ClickException("Usage data unavailable.")
    if config.usage.threshold == 0:
        status = "check disabled"
    else:
        status = "over" if snapshot.over else "ok"
    click.echo(f"Usage: {snapshot.describe()} (threshold: {config.usage.threshold}%, {status})")
