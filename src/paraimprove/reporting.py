"""Status reporting, kept apart from the scheduler.

The control loop only hands state to a ``StatusReporter``; how (or whether)
it is shown is the reporter's business.
"""

from __future__ import annotations

import re
from collections import defaultdict
from pathlib import Path
from typing import Protocol

from rich.console import Console
from rich.table import Table
from rich.text import Text

from paraimprove.collaborators.coverage import CoverageSnapshot, StopDecision
from paraimprove.coordinator.merge import replay_command
from paraimprove.protocol.models import DaemonState


class StatusReporter(Protocol):
    def tick(self, state: DaemonState, activity: dict[str, list[str]]) -> None: ...

    def round_closed(self, snapshot: CoverageSnapshot, decision: StopDecision) -> None: ...

    def finished(self, state: DaemonState) -> None: ...


class NullReporter:
    def tick(self, state: DaemonState, activity: dict[str, list[str]]) -> None:
        pass

    def round_closed(self, snapshot: CoverageSnapshot, decision: StopDecision) -> None:
        pass

    def finished(self, state: DaemonState) -> None:
        pass


def _shorten(text: str, width: int) -> str:
    return text if len(text) <= width else text[:width] + ".."


def status_line(
    state: DaemonState,
    activity: dict[str, list[str]],
    *,
    total_areas: int,
) -> str:
    """One-line progress summary, e.g. ``R2 [3/5] Read a/b.ts | idle · 2 agents · ✓1``."""
    running = [agent for agent in state.agents if agent.busy]
    parts: list[str] = []
    for agent in running:
        recent = activity.get(agent.id) or []
        label = recent[-1] if recent else agent.current_task.focus_area.name  # type: ignore[union-attr]
        parts.append(_shorten(label, 25))
    title = " | ".join(parts) if parts else "Waiting for agents"
    merged = len(state.results_with_status("merged"))
    done = len(state.completed_tasks)
    if running:
        status = f"{len(running)} agents" + (f" · ✓{merged}" if merged else "")
    else:
        status = "idle"
    return f"R{state.round_number} [{done}/{total_areas}] {title} · {status}"


def render_status(state: DaemonState) -> list[str]:
    lines = [
        f"Status: {state.status}" + (f" ({state.stop_reason})" if state.stop_reason else ""),
        f"Round: {state.round_number}",
    ]
    active = [agent for agent in state.agents if agent.busy]
    lines.append(f"Active agents: {len(active)}/{len(state.agents)}")
    for agent in active:
        task = agent.current_task
        lines.append(f"  {agent.id}: {task.focus_area.name} (attempt {task.attempts})")  # type: ignore[union-attr]
    for agent in state.agents:
        if not agent.usable:
            lines.append(f"  {agent.id}: disabled ({agent.error})")
    lines.append(f"Pending tasks: {len(state.pending_tasks)}")
    lines.append(f"Completed tasks: {len(state.completed_tasks)}")
    if state.improvements:
        lines.append(f"Merged improvements: {len(state.improvements)}")
        for item in state.improvements:
            lines.append(f"  ✓ {item.focus_area_name}: {item.summary}")
    if state.push_pending:
        lines.append("Push to remote pending")
    return lines


def render_summary(state: DaemonState, mainline_dir: str | Path) -> list[str]:
    """Final report: merged, skipped (with overlapping files) and conflicts with replay commands."""
    lines: list[str] = []
    merged = state.results_with_status("merged")
    skipped = state.results_with_status("skipped")
    conflicts = state.results_with_status("conflict")

    if merged:
        lines.append(f"Merged ({len(merged)}):")
        for r in merged:
            lines.append(f"  ✓ {r.focus_area_name} ({r.commit_ref[:8]})")
    if skipped:
        lines.append(f"Skipped ({len(skipped)}):")
        for r in skipped:
            lines.append(f"  ⊘ {r.focus_area_name}: files already merged: {r.reason}")
    if conflicts:
        lines.append(f"Conflicts ({len(conflicts)}), replay manually:")
        for r in conflicts:
            lines.append(f"  ✗ {r.focus_area_name}: {r.reason}")
            lines.append(f"    {replay_command(mainline_dir, r.commit_ref)}")
    if not lines:
        lines.append("No improvements were produced.")
    if state.push_pending:
        lines.append("Mainline has unpushed merges.")
    return lines


_SUBJECT_RE = re.compile(r"^(?P<ref>[0-9a-f]+)\s+(?P<prefix>[^:]+):\s*(?P<area>[\w.-]+)\s*-\s*(?P<rest>.*)$")


def group_improvements(lines: list[str]) -> dict[str, list[str]]:
    """Group ``git log --oneline`` lines of the form ``<ref> <prefix>: <area> - <text>`` by area."""
    grouped: dict[str, list[str]] = defaultdict(list)
    for line in lines:
        match = _SUBJECT_RE.match(line.strip())
        if match is None:
            grouped["other"].append(line.strip())
            continue
        grouped[match.group("area")].append(f"{match.group('ref')} {match.group('rest')}")
    return dict(grouped)


class ConsoleReporter:
    """Prints status changes, round snapshots and the summary with rich."""

    def __init__(
        self,
        *,
        total_areas: int,
        mainline_dir: str | Path,
        console: Console | None = None,
    ) -> None:
        self.console = console or Console(stderr=True)
        self.total_areas = total_areas
        self.mainline_dir = mainline_dir
        self._last_line = ""

    def tick(self, state: DaemonState, activity: dict[str, list[str]]) -> None:
        line = status_line(state, activity, total_areas=self.total_areas)
        if line != self._last_line:
            self._last_line = line
            self.console.print(Text(line, style="cyan"))

    def round_closed(self, snapshot: CoverageSnapshot, decision: StopDecision) -> None:
        table = Table(title=f"Round {snapshot.round_number} coverage")
        table.add_column("Focus area")
        table.add_column("Components", justify="right")
        table.add_column("Tokens", justify="right")
        for area_id, area in sorted(snapshot.areas.items()):
            table.add_row(
                area_id,
                _ratio(area.ratios.get("components")),
                _ratio(area.ratios.get("tokens")),
            )
        self.console.print(table)
        style = "green" if decision.reason == "complete" else "yellow"
        self.console.print(Text(f"Overall {snapshot.overall:.1%}: {decision.message}", style=style))

    def finished(self, state: DaemonState) -> None:
        self.console.print(Text(f"Daemon stopped ({state.stop_reason})", style="bold"))
        for line in render_summary(state, self.mainline_dir):
            self.console.print(line, highlight=False)


def _ratio(value: float | None) -> str:
    return "-" if value is None else f"{value:.0%}"
