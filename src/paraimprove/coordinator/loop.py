"""Parallel improvement daemon control loop."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from paraimprove.coordinator.merge import MergeCoordinator
from paraimprove.coordinator.retry import RetryHandler
from paraimprove.coordinator.rounds import RoundController
from paraimprove.coordinator.scheduler import assign_tasks, slot_count
from paraimprove.coordinator.state_writer import DaemonStateStore
from paraimprove.coordinator.supervisor import AgentSupervisor
from paraimprove.coordinator.watchdog import find_overdue_agents
from paraimprove.errors import AgentExecutionFailure, DaemonError, WorkspaceInitError
from paraimprove.protocol.io import append_jsonl
from paraimprove.protocol.models import (
    AgentSlot,
    AgentTask,
    DaemonState,
    FocusArea,
    StopReason,
    utc_now_iso,
)
from paraimprove.reporting import NullReporter, StatusReporter
from paraimprove.workspace.worktree import WorkspaceManager

log = logging.getLogger(__name__)


class ParallelDaemon:
    """Single-threaded coordinator for a fixed pool of agent workspaces.

    Each tick harvests finished agents (classify, then merge or retry),
    dispatches queued tasks onto idle agents and closes the round once the
    queue and every agent are idle.  The only blocking wait is the poll sleep.
    """

    def __init__(
        self,
        *,
        focus_areas: list[FocusArea],
        concurrency: int,
        workspaces: WorkspaceManager,
        supervisor: AgentSupervisor,
        merger: MergeCoordinator,
        retry: RetryHandler,
        rounds: RoundController,
        store: DaemonStateStore,
        reporter: StatusReporter | None = None,
        events_path: Path | None = None,
        poll_interval: float = 5.0,
        max_task_seconds: float = 0.0,
    ) -> None:
        self.focus_areas = list(focus_areas)
        self.concurrency = concurrency
        self.workspaces = workspaces
        self.supervisor = supervisor
        self.merger = merger
        self.retry = retry
        self.rounds = rounds
        self.store = store
        self.reporter: StatusReporter = reporter or NullReporter()
        self.events_path = events_path
        self.poll_interval = poll_interval
        self.max_task_seconds = max_task_seconds
        self.state = DaemonState()
        self._stop_requested = False
        self._wake = asyncio.Event()

    # -- lifecycle ---------------------------------------------------------

    async def initialize(self) -> None:
        """Create one workspace per slot and queue the first round.

        A WorkspaceInitError here is fatal and propagates to the caller.
        """
        count = slot_count(self.concurrency, len(self.focus_areas))
        for index in range(1, count + 1):
            agent = self.workspaces.create_workspace(f"agent-{index}")
            self.state.agents.append(agent)
            self._append_event("agent.created", {
                "agent_id": agent.id,
                "workspace_path": agent.workspace_path,
                "branch": agent.branch_name,
            })
        tasks = self.rounds.seed(self.state)
        self._append_event("round.started", {
            "round": self.state.round_number,
            "tasks": [task.id for task in tasks],
        })
        self._save()
        log.info("Initialized %d agent(s) for %d focus area(s)", count, len(self.focus_areas))

    async def run(self) -> DaemonState:
        if not self.state.agents:
            await self.initialize()
        self.state.start()
        self._save()
        try:
            while self.state.status == "running":
                await self.tick()
                if self.state.status != "running":
                    break
                await self._sleep()
        except asyncio.CancelledError:
            if self.state.status == "running":
                await self.shutdown("interrupted")
            raise
        except (DaemonError, OSError):
            log.exception("Daemon loop failed in round %d", self.state.round_number)
            if self.state.status == "running":
                await self.shutdown("error")
        return self.state

    def request_stop(self) -> None:
        """Ask the loop to stop at the next tick; safe from a signal handler."""
        self._stop_requested = True
        self._wake.set()

    async def shutdown(self, reason: StopReason) -> None:
        """Terminate in-flight agents, persist the final state, report the summary."""
        await self.supervisor.terminate_all(reason)
        for agent in reversed(self.state.agents):
            if agent.busy:
                task = self.state.release(agent)
                if task is not None:
                    self.state.return_to_queue(task, error=reason)
        self.state.stop(reason)
        self._append_event("daemon.stopped", {"reason": reason, "round": self.state.round_number})
        self._save()
        self.reporter.finished(self.state)
        log.info("Daemon stopped in round %d: %s", self.state.round_number, reason)

    # -- tick --------------------------------------------------------------

    async def tick(self) -> None:
        if self._stop_requested:
            await self.shutdown("interrupted")
            return

        await self._enforce_task_duration_limits()
        for agent in self.state.agents:
            if not agent.busy:
                continue
            exit_code = self.supervisor.poll(agent)
            if exit_code is not None:
                await self._handle_complete(agent, exit_code)
                self._save()

        await self._dispatch()

        if not self.state.usable_agents():
            log.error("No usable agents left")
            await self.shutdown("error")
            return

        if self.state.round_drained():
            snapshot, decision = self.rounds.close_round(self.state)
            self._append_event("round.closed", {
                "round": snapshot.round_number,
                "overall": round(snapshot.overall, 6),
                "stop": decision.stop,
                "reason": decision.reason,
                "message": decision.message,
            })
            self.reporter.round_closed(snapshot, decision)
            if decision.stop and decision.reason is not None:
                await self.shutdown(decision.reason)
                return
            self.supervisor.clear_activity()
            self._append_event("round.started", {
                "round": self.state.round_number,
                "tasks": [task.id for task in self.state.pending_tasks],
            })
            await self._dispatch()

        self.reporter.tick(self.state, self.supervisor.activity_snapshot())
        self._save()

    async def _dispatch(self) -> None:
        for assignment in assign_tasks(self.state):
            agent, task = assignment.agent, assignment.task
            self._append_event("task.assigned", {
                "agent_id": agent.id,
                "task_id": task.id,
                "focus_area": task.focus_area.id,
                "attempt": task.attempts,
            })
            try:
                await self.supervisor.start_agent(agent, task)
            except WorkspaceInitError as exc:
                log.error("Disabling %s: %s", agent.id, exc)
                self.state.disable_agent(agent, str(exc))
                self._append_event("agent.disabled", {"agent_id": agent.id, "error": str(exc)})
                await self._fail(agent, task, f"workspace reset failed: {exc}", "")
            except AgentExecutionFailure as exc:
                await self._fail(agent, task, str(exc), "")
            self._save()

    async def _handle_complete(self, agent: AgentSlot, exit_code: int) -> None:
        completion = self.supervisor.classify_completion(agent, exit_code)
        task = self.state.release(agent)
        if task is None:
            return
        self._append_event("task.classified", {
            "agent_id": agent.id,
            "task_id": task.id,
            "outcome": completion.outcome,
            "exit_code": exit_code,
            "commit_ref": completion.commit_ref,
            "reason": completion.reason,
        })

        if completion.outcome == "success":
            self.state.complete(task, commit_ref=completion.commit_ref, summary=completion.summary)
            result = self.merger.merge_if_eligible(self.state, task)
            self._append_event("merge.recorded", result.to_dict())
            log.info("%s finished %s: %s (%s)", agent.id, task.focus_area.id,
                     result.status, (completion.commit_ref or "")[:8])
        elif completion.outcome == "no_change":
            self.state.complete(task, commit_ref=None)
            log.info("%s finished %s without a commit", agent.id, task.focus_area.id)
        else:
            await self._fail(agent, task, completion.reason, completion.output_excerpt, released=True)

    async def _fail(
        self,
        agent: AgentSlot,
        task: AgentTask,
        reason: str,
        excerpt: str,
        *,
        released: bool = False,
    ) -> None:
        if not released:
            self.state.release(agent)
        requeued = await self.retry.handle_failure(
            self.state, task, reason=reason, output_excerpt=excerpt,
        )
        self._append_event("task.failed", {
            "agent_id": agent.id,
            "task_id": task.id,
            "attempt": task.attempts,
            "reason": reason,
            "requeued": requeued,
        })
        log.warning("%s failed %s (attempt %d, requeued=%s): %s",
                    agent.id, task.focus_area.id, task.attempts, requeued, reason)

    async def _enforce_task_duration_limits(self) -> None:
        for agent_id in find_overdue_agents(self.state.agents, self.max_task_seconds):
            agent = self.state.agent(agent_id)
            if not self.supervisor.is_running(agent_id):
                continue
            log.warning("%s exceeded %ss, terminating", agent_id, self.max_task_seconds)
            await self.supervisor.terminate(agent, "task_timeout")

    # -- helpers -----------------------------------------------------------

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass
        self._wake.clear()

    def _save(self) -> None:
        self.store.save(self.state)

    def _append_event(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.events_path is None:
            return
        item = {
            "timestamp": utc_now_iso(),
            "type": event_type,
            "payload": payload,
        }
        append_jsonl(self.events_path, item)
