"""Task assignment logic."""

from __future__ import annotations

from dataclasses import dataclass

from paraimprove.protocol.models import AgentSlot, AgentTask, DaemonState


@dataclass(slots=True)
class Assignment:
    agent: AgentSlot
    task: AgentTask


def assign_tasks(state: DaemonState) -> list[Assignment]:
    """Bind queued tasks to idle agents, head of the queue first.

    The number of running tasks can never exceed the number of agent slots,
    which is fixed at ``min(concurrency, |focus areas|)`` for the whole run.
    """
    assignments: list[Assignment] = []
    for agent in state.idle_agents():
        task = state.dequeue()
        if task is None:
            break
        state.assign(agent, task)
        assignments.append(Assignment(agent=agent, task=task))
    return assignments


def slot_count(concurrency: int, focus_area_count: int) -> int:
    return max(0, min(concurrency, focus_area_count))
