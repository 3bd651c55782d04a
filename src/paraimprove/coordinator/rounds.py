"""Round lifecycle: seeding, coverage snapshots and the stop condition."""

from __future__ import annotations

import logging

from paraimprove.collaborators.coverage import (
    CoverageHistory,
    CoverageSnapshot,
    CoverageSource,
    StopDecision,
    evaluate_stop_condition,
    take_snapshot,
)
from paraimprove.protocol.models import AgentTask, DaemonState, FocusArea, utc_now_iso

log = logging.getLogger(__name__)


class RoundController:
    def __init__(
        self,
        focus_areas: list[FocusArea],
        history: CoverageHistory,
        coverage: CoverageSource | None = None,
        *,
        target: float = 1.0,
        stall_rounds: int = 3,
    ) -> None:
        self.focus_areas = list(focus_areas)
        self.history = history
        self.coverage = coverage
        self.target = target
        self.stall_rounds = stall_rounds

    def seed(self, state: DaemonState) -> list[AgentTask]:
        """Queue the first round's tasks, one per focus area."""
        return state.seed_round(self.focus_areas)

    def snapshot(self, round_number: int) -> CoverageSnapshot:
        if self.coverage is None:
            return CoverageSnapshot(round_number=round_number, taken_at=utc_now_iso())
        return take_snapshot(round_number, self.focus_areas, self.coverage)

    def close_round(self, state: DaemonState) -> tuple[CoverageSnapshot, StopDecision]:
        """Snapshot coverage and either stop or start the next round.

        Must only be called once ``state.round_drained()`` holds.
        """
        snapshot = self.snapshot(state.round_number)
        self.history.append(snapshot)
        decision = evaluate_stop_condition(
            self.history.snapshots, target=self.target, stall_rounds=self.stall_rounds,
        )
        log.info("Round %d closed: %s", state.round_number, decision.message)
        if not decision.stop:
            state.begin_next_round(self.focus_areas)
        return snapshot, decision
