"""Data model and state transitions for the parallel improvement daemon."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

TaskStatus = Literal["pending", "running", "completed", "failed"]
MergeStatus = Literal["merged", "conflict", "skipped"]
DaemonStatus = Literal["idle", "running", "stopped"]
StopReason = Literal["complete", "stalled", "interrupted", "error"]


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class FocusArea:
    """A statically declared unit of ownership over a disjoint set of files."""

    id: str
    name: str
    description: str = ""
    owned_files: frozenset[str] = frozenset()
    test_targets: tuple[str, ...] = ()

    def owns(self, path: str) -> bool:
        return path in self.owned_files

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "owned_files": sorted(self.owned_files),
            "test_targets": list(self.test_targets),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> FocusArea:
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name", raw["id"])),
            description=str(raw.get("description", "")),
            owned_files=frozenset(str(p) for p in raw.get("owned_files", raw.get("files", []))),
            test_targets=tuple(str(t) for t in raw.get("test_targets", [])),
        )


@dataclass(slots=True)
class TaskMetrics:
    component_count: int = 0
    token_count: int = 0

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> TaskMetrics | None:
        if not isinstance(raw, dict):
            return None
        return cls(
            component_count=int(raw.get("component_count", 0)),
            token_count=int(raw.get("token_count", 0)),
        )


@dataclass(slots=True)
class GapAnalysis:
    """Why an attempt fell short, fed verbatim into the retry prompt."""

    root_causes: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    quirks: list[str] = field(default_factory=list)
    test_target: str = ""
    task_id: str = ""

    def is_empty(self) -> bool:
        return not (self.root_causes or self.recommendations or self.quirks)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> GapAnalysis | None:
        if not isinstance(raw, dict):
            return None
        return cls(
            root_causes=[str(x) for x in raw.get("root_causes", [])],
            recommendations=[str(x) for x in raw.get("recommendations", [])],
            quirks=[str(x) for x in raw.get("quirks", [])],
            test_target=str(raw.get("test_target", "")),
            task_id=str(raw.get("task_id", "")),
        )


@dataclass(slots=True)
class AgentTask:
    id: str
    focus_area: FocusArea
    status: TaskStatus = "pending"
    attempts: int = 0
    round_number: int = 1
    started_at: str | None = None
    completed_at: str | None = None
    duration_seconds: float | None = None
    metrics_before: TaskMetrics | None = None
    metrics_after: TaskMetrics | None = None
    commit_ref: str | None = None
    gap_analysis: GapAnalysis | None = None
    error: str | None = None
    summary: str | None = None

    @classmethod
    def create(cls, focus_area: FocusArea, round_number: int) -> AgentTask:
        return cls(
            id=f"{focus_area.id}-r{round_number}-{uuid.uuid4().hex[:8]}",
            focus_area=focus_area,
            round_number=round_number,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "focus_area": self.focus_area.to_dict(),
            "status": self.status,
            "attempts": self.attempts,
            "round_number": self.round_number,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
            "metrics_before": asdict(self.metrics_before) if self.metrics_before else None,
            "metrics_after": asdict(self.metrics_after) if self.metrics_after else None,
            "commit_ref": self.commit_ref,
            "gap_analysis": asdict(self.gap_analysis) if self.gap_analysis else None,
            "error": self.error,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AgentTask:
        status = raw.get("status", "pending")
        if status not in {"pending", "running", "completed", "failed"}:
            status = "pending"
        return cls(
            id=str(raw["id"]),
            focus_area=FocusArea.from_dict(raw["focus_area"]),
            status=status,
            attempts=int(raw.get("attempts", 0)),
            round_number=int(raw.get("round_number", 1)),
            started_at=raw.get("started_at"),
            completed_at=raw.get("completed_at"),
            duration_seconds=raw.get("duration_seconds"),
            metrics_before=TaskMetrics.from_dict(raw.get("metrics_before")),
            metrics_after=TaskMetrics.from_dict(raw.get("metrics_after")),
            commit_ref=raw.get("commit_ref"),
            gap_analysis=GapAnalysis.from_dict(raw.get("gap_analysis")),
            error=raw.get("error"),
            summary=raw.get("summary"),
        )


@dataclass(slots=True)
class AgentSlot:
    """One isolated workspace and the task it is currently bound to."""

    id: str
    workspace_path: str
    branch_name: str
    current_task: AgentTask | None = None
    pid: int | None = None
    log_file: str | None = None
    usable: bool = True
    error: str | None = None

    @property
    def busy(self) -> bool:
        return self.current_task is not None and self.current_task.status == "running"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_path": self.workspace_path,
            "branch_name": self.branch_name,
            "current_task": self.current_task.to_dict() if self.current_task else None,
            "pid": self.pid,
            "log_file": self.log_file,
            "usable": self.usable,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AgentSlot:
        task_raw = raw.get("current_task")
        return cls(
            id=str(raw["id"]),
            workspace_path=str(raw.get("workspace_path", "")),
            branch_name=str(raw.get("branch_name", "")),
            current_task=AgentTask.from_dict(task_raw) if isinstance(task_raw, dict) else None,
            pid=raw.get("pid"),
            log_file=raw.get("log_file"),
            usable=bool(raw.get("usable", True)),
            error=raw.get("error"),
        )


@dataclass(slots=True)
class MergeResult:
    task_id: str
    focus_area_id: str
    focus_area_name: str
    commit_ref: str
    status: MergeStatus
    reason: str | None = None
    files: list[str] = field(default_factory=list)
    recorded_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> MergeResult:
        return cls(
            task_id=str(raw.get("task_id", "")),
            focus_area_id=str(raw.get("focus_area_id", "")),
            focus_area_name=str(raw.get("focus_area_name", raw.get("focus_area_id", ""))),
            commit_ref=str(raw.get("commit_ref", "")),
            status=raw.get("status", "conflict"),
            reason=raw.get("reason"),
            files=[str(f) for f in raw.get("files", [])],
            recorded_at=str(raw.get("recorded_at", "")),
        )


@dataclass(slots=True)
class Improvement:
    """A merged commit kept for the final summary across rounds."""

    focus_area_id: str
    focus_area_name: str
    commit_ref: str
    summary: str
    round_number: int


@dataclass(slots=True)
class DaemonState:
    """Aggregate root owned by the control loop.

    Every mutation goes through one of the transition methods below so that
    the arbitration invariants hold at the point of change.
    """

    status: DaemonStatus = "idle"
    agents: list[AgentSlot] = field(default_factory=list)
    pending_tasks: list[AgentTask] = field(default_factory=list)
    completed_tasks: list[AgentTask] = field(default_factory=list)
    merge_results: list[MergeResult] = field(default_factory=list)
    merged_files: set[str] = field(default_factory=set)
    improvements: list[Improvement] = field(default_factory=list)
    round_number: int = 1
    started_at: str | None = None
    stopped_at: str | None = None
    stop_reason: StopReason | None = None
    push_pending: bool = False

    # -- queries -----------------------------------------------------------

    @property
    def running_count(self) -> int:
        return sum(1 for agent in self.agents if agent.busy)

    def round_drained(self) -> bool:
        """True when nothing is queued and no usable agent is mid-task."""
        if self.pending_tasks:
            return False
        return not any(agent.busy for agent in self.agents if agent.usable)

    def idle_agents(self) -> list[AgentSlot]:
        return [agent for agent in self.agents if agent.usable and not agent.busy]

    def usable_agents(self) -> list[AgentSlot]:
        return [agent for agent in self.agents if agent.usable]

    def agent(self, agent_id: str) -> AgentSlot:
        for agent in self.agents:
            if agent.id == agent_id:
                return agent
        raise KeyError(agent_id)

    def results_with_status(self, status: MergeStatus) -> list[MergeResult]:
        return [r for r in self.merge_results if r.status == status]

    # -- transitions -------------------------------------------------------

    def start(self) -> None:
        self.status = "running"
        self.started_at = self.started_at or utc_now_iso()
        self.stopped_at = None
        self.stop_reason = None

    def stop(self, reason: StopReason) -> None:
        self.status = "stopped"
        self.stop_reason = reason
        self.stopped_at = utc_now_iso()

    def seed_round(self, focus_areas: list[FocusArea]) -> list[AgentTask]:
        """Enqueue one fresh task per focus area for the current round."""
        tasks = [AgentTask.create(area, self.round_number) for area in focus_areas]
        for task in tasks:
            self.enqueue(task)
        return tasks

    def begin_next_round(self, focus_areas: list[FocusArea]) -> list[AgentTask]:
        self.round_number += 1
        self.completed_tasks.clear()
        return self.seed_round(focus_areas)

    def enqueue(self, task: AgentTask) -> None:
        task.status = "pending"
        self.pending_tasks.append(task)

    def dequeue(self) -> AgentTask | None:
        if not self.pending_tasks:
            return None
        return self.pending_tasks.pop(0)

    def assign(self, agent: AgentSlot, task: AgentTask) -> None:
        """Bind *task* to *agent* and count the attempt."""
        if agent.busy:
            raise ValueError(f"agent {agent.id} is already running {agent.current_task.id}")
        if not agent.usable:
            raise ValueError(f"agent {agent.id} is disabled")
        task.status = "running"
        task.attempts += 1
        task.started_at = utc_now_iso()
        task.completed_at = None
        task.duration_seconds = None
        task.commit_ref = None
        agent.current_task = task

    def release(self, agent: AgentSlot) -> AgentTask | None:
        task = agent.current_task
        agent.current_task = None
        agent.pid = None
        return task

    def complete(
        self,
        task: AgentTask,
        *,
        commit_ref: str | None,
        summary: str | None = None,
    ) -> None:
        task.status = "completed"
        task.commit_ref = commit_ref
        task.summary = summary
        task.error = None
        self._stamp_finish(task)
        self.completed_tasks.append(task)

    def requeue(self, task: AgentTask, *, error: str, gap_analysis: GapAnalysis | None) -> None:
        """Send a failed attempt to the back of the queue for another try."""
        task.error = error
        if gap_analysis is not None:
            task.gap_analysis = gap_analysis
        self._stamp_finish(task)
        self.enqueue(task)

    def fail(self, task: AgentTask, *, error: str) -> None:
        """Mark *task* permanently failed; it is never queued again."""
        task.status = "failed"
        task.error = error
        self._stamp_finish(task)
        self.completed_tasks.append(task)

    def return_to_queue(self, task: AgentTask, *, error: str) -> None:
        """Put an interrupted task back at the head of the queue."""
        task.status = "pending"
        task.error = error
        self.pending_tasks.insert(0, task)

    def disable_agent(self, agent: AgentSlot, error: str) -> None:
        agent.usable = False
        agent.error = error

    def record_merge(self, result: MergeResult) -> None:
        """Append *result*; a merged result claims its files for good."""
        if result.status == "merged":
            overlap = self.merged_files.intersection(result.files)
            if overlap:
                raise ValueError(
                    f"merge of {result.commit_ref} overlaps already merged files: "
                    f"{', '.join(sorted(overlap))}"
                )
            self.merged_files.update(result.files)
        self.merge_results.append(result)

    def record_improvement(self, task: AgentTask) -> None:
        self.improvements.append(
            Improvement(
                focus_area_id=task.focus_area.id,
                focus_area_name=task.focus_area.name,
                commit_ref=task.commit_ref or "",
                summary=task.summary or "",
                round_number=task.round_number,
            )
        )

    @staticmethod
    def _stamp_finish(task: AgentTask) -> None:
        task.completed_at = utc_now_iso()
        started = _parse_iso(task.started_at)
        finished = _parse_iso(task.completed_at)
        if started and finished:
            task.duration_seconds = round((finished - started).total_seconds(), 3)

    # -- serialization -----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "round_number": self.round_number,
            "started_at": self.started_at,
            "stopped_at": self.stopped_at,
            "stop_reason": self.stop_reason,
            "push_pending": self.push_pending,
            "updated_at": utc_now_iso(),
            "agents": [agent.to_dict() for agent in self.agents],
            "pending_tasks": [task.to_dict() for task in self.pending_tasks],
            "completed_tasks": [task.to_dict() for task in self.completed_tasks],
            "merge_results": [result.to_dict() for result in self.merge_results],
            "merged_files": sorted(self.merged_files),
            "improvements": [asdict(item) for item in self.improvements],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DaemonState:
        status = raw.get("status", "idle")
        if status not in {"idle", "running", "stopped"}:
            status = "idle"
        return cls(
            status=status,
            agents=[AgentSlot.from_dict(a) for a in raw.get("agents", []) if isinstance(a, dict)],
            pending_tasks=[
                AgentTask.from_dict(t) for t in raw.get("pending_tasks", []) if isinstance(t, dict)
            ],
            completed_tasks=[
                AgentTask.from_dict(t) for t in raw.get("completed_tasks", []) if isinstance(t, dict)
            ],
            merge_results=[
                MergeResult.from_dict(r) for r in raw.get("merge_results", []) if isinstance(r, dict)
            ],
            merged_files={str(f) for f in raw.get("merged_files", [])},
            improvements=[
                Improvement(**item) for item in raw.get("improvements", []) if isinstance(item, dict)
            ],
            round_number=int(raw.get("round_number", 1)),
            started_at=raw.get("started_at"),
            stopped_at=raw.get("stopped_at"),
            stop_reason=raw.get("stop_reason"),
            push_pending=bool(raw.get("push_pending", False)),
        )
