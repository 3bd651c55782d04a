"""First-wins merge arbitration onto the mainline."""

from __future__ import annotations

import logging
from pathlib import Path

from paraimprove.errors import GitCommandError, MergeConflict
from paraimprove.protocol.models import AgentTask, DaemonState, MergeResult
from paraimprove.workspace.git import GitRepo

log = logging.getLogger(__name__)


def replay_command(mainline_dir: str | Path, commit_ref: str) -> str:
    return f"cd {mainline_dir} && git cherry-pick {commit_ref}"


class MergeCoordinator:
    """Integrates successful task commits into the mainline, one at a time.

    The earliest completed commit wins: a later commit touching any file that
    has already been merged is skipped without touching the mainline.
    """

    def __init__(
        self,
        mainline: GitRepo,
        *,
        branch: str = "main",
        remote: str = "origin",
        push: bool = True,
        reason_max_chars: int = 200,
    ) -> None:
        self.mainline = mainline
        self.branch = branch
        self.remote = remote
        self.push_enabled = push
        self.reason_max_chars = reason_max_chars

    def merge_if_eligible(self, state: DaemonState, task: AgentTask) -> MergeResult:
        if not task.commit_ref:
            raise ValueError(f"task {task.id} has no commit to merge")
        commit = task.commit_ref

        try:
            files = sorted(self.mainline.changed_files(commit))
        except GitCommandError as exc:
            return self._record(state, task, "conflict", reason=self._truncate(exc))

        overlap = sorted(state.merged_files.intersection(files))
        if overlap:
            log.info("%s skipped: already merged %s", task.focus_area.id, ", ".join(overlap))
            return self._record(state, task, "skipped", reason=", ".join(overlap), files=files)

        outside = [f for f in files if not task.focus_area.owns(f)]
        if outside:
            log.warning("%s touched files outside its focus area: %s",
                        task.focus_area.id, ", ".join(outside))

        try:
            self._integrate(commit)
        except MergeConflict as exc:
            log.warning("%s conflicted: %s", task.focus_area.id, exc)
            return self._record(state, task, "conflict", reason=str(exc), files=files)

        result = self._record(state, task, "merged", files=files)
        state.record_improvement(task)
        log.info("Merged %s (%s)", task.focus_area.id, commit[:8])
        self._push(state)
        return result

    def _integrate(self, commit: str) -> None:
        try:
            self.mainline.cherry_pick(commit)
        except GitCommandError as exc:
            self.mainline.abort_cherry_pick()
            raise MergeConflict(self._truncate(exc), commit_ref=commit) from exc

    def _push(self, state: DaemonState) -> None:
        if not self.push_enabled:
            return
        try:
            self.mainline.push(self.remote, self.branch)
        except GitCommandError as exc:
            state.push_pending = True
            log.warning("Push to %s/%s failed, will retry after the next merge: %s",
                        self.remote, self.branch, exc)
            return
        state.push_pending = False

    def _record(
        self,
        state: DaemonState,
        task: AgentTask,
        status: str,
        *,
        reason: str | None = None,
        files: list[str] | None = None,
    ) -> MergeResult:
        result = MergeResult(
            task_id=task.id,
            focus_area_id=task.focus_area.id,
            focus_area_name=task.focus_area.name,
            commit_ref=task.commit_ref or "",
            status=status,  # type: ignore[arg-type]
            reason=reason,
            files=list(files or []),
        )
        state.record_merge(result)
        return result

    def _truncate(self, exc: GitCommandError) -> str:
        text = (exc.stderr or str(exc)).strip()
        return text[: self.reason_max_chars]
