"""CLI entrypoint for paraimprove."""

from __future__ import annotations

import asyncio
import logging
import shutil
import signal
from pathlib import Path
from typing import Any

import click

from paraimprove.adapters.registry import get_runner
from paraimprove.collaborators.coverage import CoverageHistory, ResultsCoverageSource
from paraimprove.collaborators.gap import ClaudeGapDiagnoser
from paraimprove.config.loader import (
    DEFAULT_CONFIG_NAME,
    default_config_text,
    load_daemon_yaml,
    mainline_dir,
    resolve_path,
    state_dir,
    workspaces_dir,
)
from paraimprove.config.schema import DaemonYamlConfig
from paraimprove.coordinator.loop import ParallelDaemon
from paraimprove.coordinator.merge import MergeCoordinator
from paraimprove.coordinator.retry import RetryHandler
from paraimprove.coordinator.rounds import RoundController
from paraimprove.coordinator.state_writer import DaemonStateStore
from paraimprove.coordinator.supervisor import AgentSupervisor
from paraimprove.errors import ConfigError, GitCommandError, WorkspaceInitError
from paraimprove.focus import FocusAreaRegistry
from paraimprove.logger import setup_logging
from paraimprove.protocol.io import read_jsonl
from paraimprove.protocol.models import DaemonState
from paraimprove.reporting import ConsoleReporter, group_improvements, render_status
from paraimprove.workspace.git import GitRepo
from paraimprove.workspace.worktree import WorkspaceManager

logger = logging.getLogger(__name__)

EVENTS_FILE_NAME = "daemon.events.jsonl"
HISTORY_FILE_NAME = "coverage-history.json"

config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_NAME,
    show_default=True,
    help="Daemon configuration file",
)


@click.group()
def main() -> None:
    """Parallel improvement daemon: isolated agents, first-wins merges."""


def _load_config(config_path: Path) -> DaemonYamlConfig:
    try:
        return load_daemon_yaml(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def build_daemon(cfg: DaemonYamlConfig, concurrency: int) -> ParallelDaemon:
    """Wire the default collaborators for a real run."""
    registry = FocusAreaRegistry.from_config(cfg.focus_areas)
    areas = registry.areas()
    mainline = GitRepo(mainline_dir(cfg))
    run_state_dir = state_dir(cfg)
    coverage = ResultsCoverageSource(resolve_path(cfg, cfg.coverage.results_dir))

    workspaces = WorkspaceManager(
        mainline,
        workspaces_dir(cfg),
        mainline_branch=cfg.run.mainline_branch,
        setup_commands=cfg.workspace.setup_commands,
    )
    supervisor = AgentSupervisor(
        get_runner(cfg.agent),
        workspaces,
        prompt=cfg.prompt,
        log_dir=run_state_dir / "logs",
        coverage=coverage,
        max_attempts=cfg.retries.max_attempts,
        activity_window=cfg.agent.activity_window,
        excerpt_chars=cfg.gap.excerpt_chars,
    )
    diagnoser = None
    if cfg.gap.enabled:
        diagnoser = ClaudeGapDiagnoser(
            binary=cfg.gap.binary,
            model=cfg.gap.model,
            timeout_seconds=cfg.gap.timeout_seconds,
            cwd=mainline.root,
        )
    return ParallelDaemon(
        focus_areas=areas,
        concurrency=concurrency,
        workspaces=workspaces,
        supervisor=supervisor,
        merger=MergeCoordinator(
            mainline,
            branch=cfg.run.mainline_branch,
            remote=cfg.run.remote,
            push=cfg.merge.push,
            reason_max_chars=cfg.merge.reason_max_chars,
        ),
        retry=RetryHandler(
            diagnoser,
            coverage,
            max_attempts=cfg.retries.max_attempts,
            excerpt_chars=cfg.gap.excerpt_chars,
        ),
        rounds=RoundController(
            areas,
            CoverageHistory(run_state_dir / HISTORY_FILE_NAME),
            coverage,
            target=cfg.coverage.target,
            stall_rounds=cfg.coverage.stall_rounds,
        ),
        store=DaemonStateStore(run_state_dir),
        reporter=ConsoleReporter(total_areas=len(areas), mainline_dir=mainline.root),
        events_path=run_state_dir / EVENTS_FILE_NAME,
        poll_interval=cfg.run.poll_interval_seconds,
        max_task_seconds=cfg.agent.max_task_seconds,
    )


async def _run_daemon(daemon: ParallelDaemon) -> DaemonState:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, daemon.request_stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C cancels the run instead.
            logger.debug("signal handlers unavailable for %s", sig)
    return await daemon.run()


def exit_code_for(state: DaemonState) -> int:
    return 1 if state.stop_reason in {"stalled", "error"} else 0


@main.command("start")
@click.argument("concurrency", type=click.IntRange(min=1), required=False)
@config_option
@click.option("--debug", "debug_flag", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines on stderr")
def start_command(
    concurrency: int | None, config_path: Path, debug_flag: bool, json_logs: bool,
) -> None:
    """Create workspaces and run improvement rounds until complete or stalled."""
    cfg = _load_config(config_path)
    mainline = GitRepo(mainline_dir(cfg))
    if not mainline.is_repository():
        raise click.ClickException(f"{mainline.root} is not a git repository")

    setup_logging(
        debug=debug_flag,
        json_output=json_logs,
        log_file=state_dir(cfg) / "logs" / "parallel-daemon.log",
    )
    try:
        daemon = build_daemon(cfg, concurrency or cfg.run.concurrency)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(
        f"Starting {min(concurrency or cfg.run.concurrency, len(daemon.focus_areas))} agents "
        f"over {len(daemon.focus_areas)} focus areas (ctrl+c to stop)"
    )
    try:
        state = asyncio.run(_run_daemon(daemon))
    except WorkspaceInitError as exc:
        raise click.ClickException(
            f"{exc}\nRun `paraimprove cleanup` to remove partially created workspaces."
        ) from exc
    raise SystemExit(exit_code_for(state))


@main.command("status")
@config_option
@click.option("--events", "event_tail", default=0, show_default=True, help="Also show this many recent events")
def status_command(config_path: Path, event_tail: int) -> None:
    """Show persisted daemon state."""
    cfg = _load_config(config_path)
    store = DaemonStateStore(state_dir(cfg))
    state = store.load()
    if state is None:
        click.echo(f"No daemon state found at {store.path}")
        return
    for line in render_status(state):
        click.echo(line)
    if event_tail > 0:
        click.echo("Recent events:")
        for item in read_jsonl(state_dir(cfg) / EVENTS_FILE_NAME)[-event_tail:]:
            click.echo(f"  {item.get('timestamp', '')} {item.get('type', '')} {item.get('payload', {})}")


@main.command("cleanup")
@config_option
def cleanup_command(config_path: Path) -> None:
    """Remove every agent workspace and its branch."""
    cfg = _load_config(config_path)
    mainline = GitRepo(mainline_dir(cfg))
    manager = WorkspaceManager(
        mainline, workspaces_dir(cfg), mainline_branch=cfg.run.mainline_branch,
    )
    state = DaemonStateStore(state_dir(cfg)).load()
    removed = manager.cleanup(state.agents if state else [])
    if not removed:
        click.echo("No workspaces to remove")
        return
    for agent_id in removed:
        click.echo(f"Removed workspace for {agent_id}")


@main.command("improvements")
@click.argument("count", type=click.IntRange(min=1), default=50)
@config_option
def improvements_command(count: int, config_path: Path) -> None:
    """List merged improvement commits grouped by focus area."""
    cfg = _load_config(config_path)
    repo = GitRepo(mainline_dir(cfg))
    try:
        lines = repo.log_oneline(grep=f"{cfg.prompt.commit_prefix}:", count=count)
    except GitCommandError as exc:
        raise click.ClickException(str(exc)) from exc
    if not lines:
        click.echo("No improvements yet")
        return
    for area_id, commits in sorted(group_improvements(lines).items()):
        click.echo(f"{area_id} ({len(commits)}):")
        for commit in commits:
            click.echo(f"  {commit}")


@main.command("areas")
@config_option
def areas_command(config_path: Path) -> None:
    """List configured focus areas and the files they own."""
    cfg = _load_config(config_path)
    try:
        registry = FocusAreaRegistry.from_config(cfg.focus_areas)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    for area in registry:
        targets = ", ".join(area.test_targets) or "no test targets"
        click.echo(f"{area.id}: {area.name} ({targets})")
        for path in sorted(area.owned_files):
            click.echo(f"  - {path}")


def _doctor_rows(cfg: DaemonYamlConfig) -> list[dict[str, Any]]:
    binaries = [("git", "mainline")]
    if cfg.agent.backend == "command" and cfg.agent.command:
        binaries.append((cfg.agent.command[0], "agent"))
    else:
        binaries.append(("claude", "agent"))
    if cfg.gap.enabled:
        binaries.append((cfg.gap.binary, "gap"))
    rows: list[dict[str, Any]] = []
    for binary, purpose in binaries:
        found = shutil.which(binary) is not None
        rows.append({
            "purpose": purpose,
            "binary": binary,
            "ok": found,
            "details": "ok" if found else f"missing binary `{binary}`",
        })
    repo = GitRepo(mainline_dir(cfg))
    rows.append({
        "purpose": "mainline",
        "binary": str(repo.root),
        "ok": repo.is_repository(),
        "details": "ok" if repo.is_repository() else "not a git repository",
    })
    return rows


@main.command("doctor")
@config_option
def doctor_command(config_path: Path) -> None:
    """Validate required binaries and the mainline repository."""
    cfg = _load_config(config_path)
    click.echo("Preflight:")
    all_ok = True
    for row in _doctor_rows(cfg):
        icon = "OK" if row["ok"] else "FAIL"
        click.echo(f"  [{icon}] {row['purpose']}: {row['binary']} - {row['details']}")
        all_ok = all_ok and bool(row["ok"])
    raise SystemExit(0 if all_ok else 1)


@main.command("init")
@click.argument("target", type=click.Path(dir_okay=False, path_type=Path), default=DEFAULT_CONFIG_NAME)
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def init_command(target: Path, force: bool) -> None:
    """Write a starter configuration with the default focus areas."""
    if target.exists() and not force:
        raise click.ClickException(f"{target} already exists (use --force to overwrite)")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(default_config_text(), encoding="utf-8")
    click.echo(f"Wrote {target}")
