"""Watchdog for agent runs that exceed their wall-clock budget."""

from __future__ import annotations

from datetime import UTC, datetime

from paraimprove.protocol.models import AgentSlot


def parse_iso(ts: str) -> datetime:
    try:
        return datetime.fromisoformat(ts)
    except ValueError:
        return datetime.now(UTC)


def find_overdue_agents(
    agents: list[AgentSlot],
    max_task_seconds: float,
    now: datetime | None = None,
) -> list[str]:
    """Ids of busy agents whose task has run longer than *max_task_seconds*.

    A non-positive limit disables the check.
    """
    if max_task_seconds <= 0:
        return []
    current = now or datetime.now(UTC)
    overdue: list[str] = []
    for agent in agents:
        task = agent.current_task
        if not agent.busy or task is None or not task.started_at:
            continue
        if (current - parse_iso(task.started_at)).total_seconds() > max_task_seconds:
            overdue.append(agent.id)
    return overdue
