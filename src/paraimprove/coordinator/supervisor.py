"""Agent process supervision: dispatch, live activity and completion classification."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from paraimprove.adapters.base import AgentRun, AgentRunner
from paraimprove.collaborators.coverage import CoverageSource
from paraimprove.config.schema import PromptConfig
from paraimprove.coordinator.prompt import build_agent_prompt
from paraimprove.errors import GitCommandError
from paraimprove.protocol.models import AgentSlot, AgentTask, TaskMetrics
from paraimprove.workspace.worktree import WorkspaceManager

log = logging.getLogger(__name__)

CompletionOutcome = Literal["success", "no_change", "failure"]


@dataclass(slots=True)
class Completion:
    outcome: CompletionOutcome
    exit_code: int | None
    commit_ref: str | None = None
    summary: str | None = None
    reason: str = ""
    output_excerpt: str = ""


class AgentSupervisor:
    """Owns the running agent processes, one per busy agent slot."""

    def __init__(
        self,
        runner: AgentRunner,
        workspaces: WorkspaceManager,
        *,
        prompt: PromptConfig,
        log_dir: Path,
        coverage: CoverageSource | None = None,
        max_attempts: int = 3,
        activity_window: int = 5,
        excerpt_chars: int = 2000,
    ) -> None:
        self.runner = runner
        self.workspaces = workspaces
        self.prompt = prompt
        self.log_dir = Path(log_dir)
        self.coverage = coverage
        self.max_attempts = max_attempts
        self.activity_window = activity_window
        self.excerpt_chars = excerpt_chars
        self._runs: dict[str, AgentRun] = {}
        self._timed_out: set[str] = set()
        self._activity: dict[str, deque[str]] = {}

    # -- lifecycle ---------------------------------------------------------

    async def start_agent(self, agent: AgentSlot, task: AgentTask) -> None:
        """Reset the workspace and launch the agent for *task*.

        Raises WorkspaceInitError when the reset fails and
        AgentExecutionFailure when the process cannot be started.
        """
        self.workspaces.reset_workspace(agent)
        task.metrics_before = self._measure(task)

        prompt = build_agent_prompt(agent, task, self.prompt, max_attempts=self.max_attempts)
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
        log_file = self.log_dir / f"{agent.id}-{task.focus_area.id}-{stamp}.log"
        run = await self.runner.submit(prompt, cwd=Path(agent.workspace_path), log_file=log_file)

        self._runs[agent.id] = run
        self._timed_out.discard(agent.id)
        self._activity[agent.id] = deque(maxlen=self.activity_window)
        agent.pid = run.pid
        agent.log_file = str(log_file)
        log.info("[%s] started %s (attempt %d) pid=%s",
                 agent.id, task.focus_area.id, task.attempts, run.pid)

    def poll(self, agent: AgentSlot) -> int | None:
        """Drain new events; return the exit code once the run has finished."""
        run = self._runs.get(agent.id)
        if run is None:
            return None
        window = self._activity.setdefault(agent.id, deque(maxlen=self.activity_window))
        for event in run.drain_events():
            if event.kind == "tool_use":
                window.append(str(event.payload.get("activity", event.tool_name or "")))
        if not run.finished:
            return None
        code = run.returncode
        return code if code is not None else -1

    def is_running(self, agent_id: str) -> bool:
        return agent_id in self._runs

    async def terminate(self, agent: AgentSlot, reason: str) -> None:
        run = self._runs.get(agent.id)
        if run is None:
            return
        if reason == "task_timeout":
            self._timed_out.add(agent.id)
        await run.terminate(reason)

    async def terminate_all(self, reason: str) -> None:
        for agent_id, run in list(self._runs.items()):
            log.info("[%s] terminating: %s", agent_id, reason)
            await run.terminate(reason)
        self._runs.clear()

    # -- classification ----------------------------------------------------

    def classify_completion(self, agent: AgentSlot, exit_code: int) -> Completion:
        """Success needs exit code 0 and at least one new commit on the branch."""
        run = self._runs.pop(agent.id, None)
        excerpt = run.output_tail(self.excerpt_chars) if run is not None else ""
        task = agent.current_task
        if task is not None:
            task.metrics_after = self._measure(task)

        if agent.id in self._timed_out:
            self._timed_out.discard(agent.id)
            return Completion("failure", exit_code, reason="task_timeout", output_excerpt=excerpt)
        if exit_code != 0:
            return Completion(
                "failure", exit_code, reason=f"exit code {exit_code}", output_excerpt=excerpt,
            )

        try:
            commits = self.workspaces.new_commits(agent)
        except GitCommandError as exc:
            return Completion(
                "failure", exit_code, reason=f"cannot inspect branch: {exc}", output_excerpt=excerpt,
            )
        if not commits:
            return Completion("no_change", exit_code, output_excerpt=excerpt)

        head = commits[0]
        try:
            subject = self.workspaces.commit_subject(agent, head)
        except GitCommandError:
            subject = ""
        return Completion(
            "success",
            exit_code,
            commit_ref=head,
            summary=subject or (task.focus_area.name if task else None),
            output_excerpt=excerpt,
        )

    # -- activity ----------------------------------------------------------

    def activity(self, agent_id: str) -> list[str]:
        return list(self._activity.get(agent_id, ()))

    def activity_snapshot(self) -> dict[str, list[str]]:
        return {agent_id: list(window) for agent_id, window in self._activity.items()}

    def clear_activity(self) -> None:
        self._activity.clear()

    def _measure(self, task: AgentTask) -> TaskMetrics | None:
        if self.coverage is None or not task.focus_area.test_targets:
            return None
        try:
            measurement = self.coverage.measure(task.focus_area.test_targets[0])
        except OSError as exc:
            log.warning("Cannot measure %s: %s", task.focus_area.test_targets[0], exc)
            return None
        if measurement is None:
            return None
        return TaskMetrics(
            component_count=measurement.detected.component_count,
            token_count=measurement.detected.token_count,
        )
