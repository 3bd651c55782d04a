"""Coverage measurement, coverage history and the round stop condition."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol

from paraimprove.protocol.io import read_json, write_json_atomic
from paraimprove.protocol.models import FocusArea, TaskMetrics, utc_now_iso

log = logging.getLogger(__name__)

METRICS = ("components", "tokens")


@dataclass(slots=True)
class TargetMeasurement:
    target: str
    detected: TaskMetrics
    expected: TaskMetrics


class CoverageSource(Protocol):
    def measure(self, target: str) -> TargetMeasurement | None: ...


def _count(value: Any) -> int:
    if isinstance(value, list):
        return len(value)
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, dict):
        return _count(value.get("total", 0))
    return 0


class ResultsCoverageSource:
    """Reads scan results laid out as ``<results>/<owner>/<name>/*.json``.

    ``ground-truth.json`` holds the expected totals and ``test-run.json`` the
    latest scan output.  Targets without ground truth are not measurable.
    """

    def __init__(self, results_dir: Path) -> None:
        self.results_dir = Path(results_dir)

    def _target_dir(self, target: str) -> Path:
        return self.results_dir.joinpath(*target.split("/"))

    def measure(self, target: str) -> TargetMeasurement | None:
        target_dir = self._target_dir(target)
        truth = read_json(target_dir / "ground-truth.json", None)
        if not isinstance(truth, dict):
            return None
        expected = TaskMetrics(
            component_count=_count(truth.get("components", {})),
            token_count=_count(truth.get("tokens", {})),
        )
        run = read_json(target_dir / "test-run.json", {})
        scan: dict[str, Any] = {}
        if isinstance(run, dict):
            output = run.get("buoyOutput")
            if isinstance(output, dict) and isinstance(output.get("scan"), dict):
                scan = output["scan"]
        detected = TaskMetrics(
            component_count=_count(scan.get("components", 0)),
            token_count=_count(scan.get("tokens", 0)),
        )
        return TargetMeasurement(target=target, detected=detected, expected=expected)


@dataclass(slots=True)
class AreaCoverage:
    focus_area_id: str
    detected: TaskMetrics
    expected: TaskMetrics
    ratios: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AreaCoverage:
        return cls(
            focus_area_id=str(raw.get("focus_area_id", "")),
            detected=TaskMetrics.from_dict(raw.get("detected")) or TaskMetrics(),
            expected=TaskMetrics.from_dict(raw.get("expected")) or TaskMetrics(),
            ratios={str(k): float(v) for k, v in (raw.get("ratios") or {}).items()},
        )


@dataclass(slots=True)
class CoverageSnapshot:
    round_number: int
    taken_at: str
    areas: dict[str, AreaCoverage] = field(default_factory=dict)

    @property
    def tracked(self) -> dict[tuple[str, str], float]:
        return {
            (area_id, metric): ratio
            for area_id, area in self.areas.items()
            for metric, ratio in area.ratios.items()
        }

    @property
    def overall(self) -> float:
        values = list(self.tracked.values())
        return sum(values) / len(values) if values else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "round_number": self.round_number,
            "taken_at": self.taken_at,
            "overall": round(self.overall, 6),
            "areas": {area_id: asdict(area) for area_id, area in self.areas.items()},
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CoverageSnapshot:
        areas_raw = raw.get("areas") or {}
        return cls(
            round_number=int(raw.get("round_number", 0)),
            taken_at=str(raw.get("taken_at", "")),
            areas={
                str(area_id): AreaCoverage.from_dict(area)
                for area_id, area in areas_raw.items()
                if isinstance(area, dict)
            },
        )


def measure_area(area: FocusArea, source: CoverageSource) -> AreaCoverage | None:
    """Sum the area's test targets; None when none of them is measurable."""
    detected = TaskMetrics()
    expected = TaskMetrics()
    measured = False
    for target in area.test_targets:
        try:
            measurement = source.measure(target)
        except OSError as exc:
            log.warning("Cannot measure %s: %s", target, exc)
            continue
        if measurement is None:
            continue
        measured = True
        detected.component_count += measurement.detected.component_count
        detected.token_count += measurement.detected.token_count
        expected.component_count += measurement.expected.component_count
        expected.token_count += measurement.expected.token_count
    if not measured:
        return None
    ratios: dict[str, float] = {}
    if expected.component_count > 0:
        ratios["components"] = min(1.0, detected.component_count / expected.component_count)
    if expected.token_count > 0:
        ratios["tokens"] = min(1.0, detected.token_count / expected.token_count)
    return AreaCoverage(
        focus_area_id=area.id, detected=detected, expected=expected, ratios=ratios,
    )


def take_snapshot(
    round_number: int,
    focus_areas: list[FocusArea],
    source: CoverageSource,
) -> CoverageSnapshot:
    areas: dict[str, AreaCoverage] = {}
    for area in focus_areas:
        coverage = measure_area(area, source)
        if coverage is not None and coverage.ratios:
            areas[area.id] = coverage
    return CoverageSnapshot(round_number=round_number, taken_at=utc_now_iso(), areas=areas)


class CoverageHistory:
    """Append-only list of snapshots persisted next to the daemon state."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        raw = read_json(self.path, {})
        items = raw.get("snapshots", []) if isinstance(raw, dict) else []
        self.snapshots: list[CoverageSnapshot] = [
            CoverageSnapshot.from_dict(item) for item in items if isinstance(item, dict)
        ]

    def append(self, snapshot: CoverageSnapshot) -> None:
        self.snapshots.append(snapshot)
        self.save()

    def save(self) -> None:
        write_json_atomic(
            self.path,
            {
                "updated_at": utc_now_iso(),
                "current_coverage": round(self.latest.overall, 6) if self.latest else 0.0,
                "snapshots": [s.to_dict() for s in self.snapshots],
            },
        )

    @property
    def latest(self) -> CoverageSnapshot | None:
        return self.snapshots[-1] if self.snapshots else None


@dataclass(slots=True)
class StopDecision:
    stop: bool
    reason: Literal["complete", "stalled"] | None = None
    message: str = ""


def evaluate_stop_condition(
    snapshots: list[CoverageSnapshot],
    *,
    target: float = 1.0,
    stall_rounds: int = 3,
) -> StopDecision:
    """Decide whether the round loop should end.

    Complete: every metric ever tracked has reached *target* in some snapshot.
    Stalled: overall coverage of the last *stall_rounds* snapshots never rose
    above the snapshot just before them.
    """
    if not snapshots:
        return StopDecision(stop=False, message="no coverage data yet")

    best: dict[tuple[str, str], float] = {}
    for snapshot in snapshots:
        for key, ratio in snapshot.tracked.items():
            best[key] = max(best.get(key, 0.0), ratio)
    if best and all(ratio >= target - 1e-9 for ratio in best.values()):
        return StopDecision(
            stop=True,
            reason="complete",
            message=f"all {len(best)} tracked metrics reached {target:.0%}",
        )

    if len(snapshots) > stall_rounds:
        baseline = snapshots[-stall_rounds - 1].overall
        recent = max(s.overall for s in snapshots[-stall_rounds:])
        if recent <= baseline + 1e-9:
            return StopDecision(
                stop=True,
                reason="stalled",
                message=f"coverage stuck at {baseline:.1%} for {stall_rounds} rounds",
            )

    latest = snapshots[-1]
    return StopDecision(stop=False, message=f"coverage {latest.overall:.1%}")
