"""Bounded retries steered by gap diagnosis."""

from __future__ import annotations

import logging

from paraimprove.collaborators.coverage import CoverageSource
from paraimprove.collaborators.gap import GapDiagnoser, GapRequest
from paraimprove.errors import GapDiagnosisError
from paraimprove.protocol.models import AgentTask, DaemonState, GapAnalysis, TaskMetrics

log = logging.getLogger(__name__)

# Used when the coverage source has no ground truth for the target.
DEFAULT_EXPECTED = TaskMetrics(component_count=100, token_count=50)


class RetryHandler:
    def __init__(
        self,
        diagnoser: GapDiagnoser | None,
        coverage: CoverageSource | None = None,
        *,
        max_attempts: int = 3,
        excerpt_chars: int = 2000,
    ) -> None:
        self.diagnoser = diagnoser
        self.coverage = coverage
        self.max_attempts = max_attempts
        self.excerpt_chars = excerpt_chars

    async def handle_failure(
        self,
        state: DaemonState,
        task: AgentTask,
        *,
        reason: str,
        output_excerpt: str = "",
    ) -> bool:
        """Requeue *task* with a fresh diagnosis, or fail it for good.

        Returns True when the task went back into the queue.
        """
        if task.attempts >= self.max_attempts:
            state.fail(task, error=reason)
            log.warning("%s failed permanently after %d attempts: %s",
                        task.focus_area.id, task.attempts, reason)
            return False

        gap = await self._diagnose(self.build_request(task, reason, output_excerpt))
        state.requeue(task, error=reason, gap_analysis=gap)
        log.info("%s requeued (attempt %d/%d failed: %s)",
                 task.focus_area.id, task.attempts, self.max_attempts, reason)
        return True

    def build_request(self, task: AgentTask, reason: str, output_excerpt: str) -> GapRequest:
        target = task.focus_area.test_targets[0] if task.focus_area.test_targets else ""
        measurement = None
        if self.coverage is not None and target:
            try:
                measurement = self.coverage.measure(target)
            except OSError as exc:
                log.warning("Cannot measure %s: %s", target, exc)

        detected = task.metrics_after or TaskMetrics()
        expected = DEFAULT_EXPECTED
        if measurement is not None:
            detected = measurement.detected
            if measurement.expected.component_count or measurement.expected.token_count:
                expected = measurement.expected

        tail = output_excerpt[-self.excerpt_chars:] if output_excerpt else ""
        return GapRequest(
            test_target=target,
            task_id=task.id,
            detected=TaskMetrics(detected.component_count, detected.token_count),
            expected=TaskMetrics(expected.component_count, expected.token_count),
            attempted_fix_excerpt=f"Attempt {task.attempts} failed: {reason}\n{tail}".rstrip(),
        )

    async def _diagnose(self, request: GapRequest) -> GapAnalysis | None:
        if self.diagnoser is None:
            return None
        try:
            gap = await self.diagnoser.diagnose(request)
        except GapDiagnosisError as exc:
            log.warning("Gap diagnosis for %s failed: %s", request.task_id, exc)
            return None
        for rec in gap.recommendations[:2]:
            log.info("  gap: %s", rec[:70])
        return gap
