"""Scenario tests for the ParallelDaemon control loop."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from paraimprove.adapters.base import AgentEvent
from paraimprove.protocol.io import read_jsonl
from tests.helpers import FakeCoverage, FakeDiagnoser, make_area, make_daemon


def _areas(*ids: str):
    return [make_area(area_id) for area_id in ids]


async def _started(daemon):
    await daemon.initialize()
    daemon.state.start()
    return daemon


# ---------------------------------------------------------------------------
# initialization and scheduling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_initialize_creates_min_of_concurrency_and_areas(tmp_path: Path) -> None:
    daemon, _runner, workspaces, _ = make_daemon(tmp_path, _areas("a", "b", "c"), concurrency=5)
    await daemon.initialize()

    assert workspaces.created == ["agent-1", "agent-2", "agent-3"]
    assert [t.focus_area.id for t in daemon.state.pending_tasks] == ["a", "b", "c"]
    assert all(t.attempts == 0 and t.round_number == 1 for t in daemon.state.pending_tasks)
    assert (tmp_path / "parallel-daemon-state.json").exists()


@pytest.mark.asyncio
async def test_running_tasks_never_exceed_slot_count(tmp_path: Path) -> None:
    daemon, runner, _, _ = make_daemon(tmp_path, _areas("a", "b", "c", "d"), concurrency=2)
    await _started(daemon)

    for area_id in ["a", "b", "c", "d"]:
        await daemon.tick()
        assert daemon.state.running_count <= 2
        runner.finish(area_id, 0)

    await daemon.tick()
    assert daemon.state.running_count <= 2


@pytest.mark.asyncio
async def test_first_wins_scenario_with_shared_file(tmp_path: Path) -> None:
    daemon, runner, _, mainline = make_daemon(tmp_path, _areas("a", "b", "c"), concurrency=2)
    await _started(daemon)

    await daemon.tick()
    agent1, agent2 = daemon.state.agents
    assert agent1.current_task.focus_area.id == "a"
    assert agent2.current_task.focus_area.id == "b"
    assert [t.focus_area.id for t in daemon.state.pending_tasks] == ["c"]

    ref_a = runner.finish("a", 0, files=["file1"])
    await daemon.tick()
    assert [(r.focus_area_id, r.status) for r in daemon.state.merge_results] == [("a", "merged")]
    assert daemon.state.merged_files == {"file1"}
    assert mainline.picked == [ref_a]
    assert agent1.current_task.focus_area.id == "c"

    runner.finish("b", 0, files=["file1"])
    await daemon.tick()
    skipped = daemon.state.merge_results[-1]
    assert skipped.focus_area_id == "b"
    assert skipped.status == "skipped"
    assert skipped.reason == "file1"
    assert mainline.picked == [ref_a]
    assert daemon.state.merged_files == {"file1"}


@pytest.mark.asyncio
async def test_merged_files_equals_union_of_merged_results(tmp_path: Path) -> None:
    daemon, runner, _, _ = make_daemon(tmp_path, _areas("a", "b", "c"), concurrency=3)
    await _started(daemon)
    await daemon.tick()

    runner.finish("a", 0, files=["x.ts", "y.ts"])
    runner.finish("b", 0, files=["y.ts", "z.ts"])
    runner.finish("c", 0, files=["w.ts"])
    await daemon.tick()

    merged = daemon.state.results_with_status("merged")
    union = set().union(*(set(r.files) for r in merged))
    assert daemon.state.merged_files == union == {"x.ts", "y.ts", "w.ts"}
    assert [r.status for r in daemon.state.merge_results] == ["merged", "skipped", "merged"]


# ---------------------------------------------------------------------------
# completion classification
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_exit_zero_without_commit_completes_without_merge(tmp_path: Path) -> None:
    daemon, runner, _, _ = make_daemon(tmp_path, _areas("a", "b"), concurrency=2)
    await _started(daemon)
    await daemon.tick()
    task = daemon.state.agents[0].current_task

    runner.finish("a", 0)
    await daemon.tick()

    assert task.status == "completed"
    assert task.commit_ref is None
    assert daemon.state.merge_results == []


@pytest.mark.asyncio
async def test_nonzero_exit_with_commit_is_a_failure(tmp_path: Path) -> None:
    diagnoser = FakeDiagnoser()
    daemon, runner, _, _ = make_daemon(tmp_path, _areas("a", "b"), diagnoser=diagnoser)
    await _started(daemon)
    await daemon.tick()
    task = daemon.state.agents[0].current_task

    runner.finish("a", 2, files=["src/a.ts"])
    await daemon.tick()

    assert daemon.state.merge_results == []
    assert task.error == "exit code 2"
    assert len(diagnoser.requests) == 1


# ---------------------------------------------------------------------------
# retries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fail_fail_succeed_uses_fresh_diagnoses(tmp_path: Path) -> None:
    diagnoser = FakeDiagnoser()
    daemon, runner, _, _ = make_daemon(
        tmp_path, _areas("a"), concurrency=1, diagnoser=diagnoser,
    )
    await _started(daemon)
    await daemon.tick()
    task = daemon.state.agents[0].current_task

    runner.finish("a", 1, tail="first attempt output")
    await daemon.tick()
    assert task.attempts == 2
    assert "cause 1" in runner.runs[-1].prompt

    runner.finish("a", 1, tail="second attempt output")
    await daemon.tick()
    assert task.attempts == 3
    assert "cause 2" in runner.runs[-1].prompt
    assert "Attempt 3/3" in runner.runs[-1].prompt

    runner.finish("a", 0, files=["src/a.ts"])
    await daemon.tick()

    assert task.status == "completed"
    assert task.attempts == 3
    assert task.commit_ref is not None
    first, second = diagnoser.requests
    assert "first attempt output" in first.attempted_fix_excerpt
    assert "second attempt output" in second.attempted_fix_excerpt
    assert first.attempted_fix_excerpt != second.attempted_fix_excerpt


@pytest.mark.asyncio
async def test_third_failure_is_permanent_and_not_carried_forward(tmp_path: Path) -> None:
    daemon, runner, _, _ = make_daemon(
        tmp_path, _areas("a"), concurrency=1, diagnoser=FakeDiagnoser(),
    )
    await _started(daemon)
    await daemon.tick()
    task = daemon.state.agents[0].current_task

    for _ in range(3):
        runner.finish("a", 1)
        await daemon.tick()

    assert task.status == "failed"
    assert task.attempts == 3
    assert daemon.state.round_number == 2
    assert all(t.id != task.id for t in daemon.state.pending_tasks)
    current = daemon.state.agents[0].current_task
    assert current is not None and current.id != task.id and current.attempts == 1


@pytest.mark.asyncio
async def test_requeue_goes_to_back_of_queue(tmp_path: Path) -> None:
    daemon, runner, _, _ = make_daemon(
        tmp_path, _areas("a", "b", "c"), concurrency=1, diagnoser=FakeDiagnoser(),
    )
    await _started(daemon)
    await daemon.tick()

    runner.finish("a", 1)
    await daemon.tick()

    assert daemon.state.agents[0].current_task.focus_area.id == "b"
    assert [t.focus_area.id for t in daemon.state.pending_tasks] == ["c", "a"]


@pytest.mark.asyncio
async def test_diagnoser_failure_still_requeues(tmp_path: Path) -> None:
    daemon, runner, _, _ = make_daemon(
        tmp_path, _areas("a", "b"), concurrency=1, diagnoser=FakeDiagnoser(fail=True),
    )
    await _started(daemon)
    await daemon.tick()
    task = daemon.state.agents[0].current_task

    runner.finish("a", 1)
    await daemon.tick()

    assert task.status == "pending"
    assert task.gap_analysis is None
    assert daemon.state.pending_tasks[-1] is task


# ---------------------------------------------------------------------------
# merge outcomes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_conflict_aborts_and_truncates_reason(tmp_path: Path) -> None:
    daemon, runner, _, mainline = make_daemon(tmp_path, _areas("a", "b"))
    await _started(daemon)
    await daemon.tick()

    ref = runner.finish("a", 0, files=["src/a.ts"])
    mainline.conflicts.add(ref)
    await daemon.tick()

    result = daemon.state.merge_results[-1]
    assert result.status == "conflict"
    assert len(result.reason) <= 200
    assert mainline.aborted == 1
    assert daemon.state.merged_files == set()
    assert daemon.state.improvements == []


@pytest.mark.asyncio
async def test_push_failure_is_retried_on_next_merge(tmp_path: Path) -> None:
    daemon, runner, _, mainline = make_daemon(tmp_path, _areas("a", "b"))
    await _started(daemon)
    await daemon.tick()

    mainline.push_fails = True
    runner.finish("a", 0, files=["src/a.ts"])
    await daemon.tick()
    assert daemon.state.push_pending is True
    assert daemon.state.results_with_status("merged")

    mainline.push_fails = False
    runner.finish("b", 0, files=["src/b.ts"])
    await daemon.tick()
    assert daemon.state.push_pending is False
    assert mainline.pushes == 1


# ---------------------------------------------------------------------------
# rounds
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_full_coverage_stops_complete_without_new_tasks(tmp_path: Path) -> None:
    areas = [make_area("a", targets=("org/a",)), make_area("b", targets=("org/b",))]
    coverage = FakeCoverage({"org/a": 1.0, "org/b": 1.0})
    daemon, runner, _, _ = make_daemon(tmp_path, areas, coverage=coverage)
    await _started(daemon)
    await daemon.tick()

    runner.finish("a", 0, files=["src/a.ts"])
    runner.finish("b", 0)
    await daemon.tick()

    assert daemon.state.status == "stopped"
    assert daemon.state.stop_reason == "complete"
    assert daemon.state.pending_tasks == []
    assert daemon.state.round_number == 1


@pytest.mark.asyncio
async def test_round_end_tasks_are_all_terminal_and_next_round_is_seeded(tmp_path: Path) -> None:
    daemon, runner, _, _ = make_daemon(
        tmp_path, _areas("a", "b"), diagnoser=FakeDiagnoser(), max_attempts=1,
    )
    await _started(daemon)
    await daemon.tick()
    round_one = [agent.current_task for agent in daemon.state.agents]

    runner.finish("a", 0, files=["src/a.ts"])
    runner.finish("b", 1)
    await daemon.tick()

    assert {t.status for t in round_one} == {"completed", "failed"}
    assert daemon.state.round_number == 2
    assert sorted(a.current_task.focus_area.id for a in daemon.state.agents) == ["a", "b"]
    assert all(a.current_task.round_number == 2 for a in daemon.state.agents)


@pytest.mark.asyncio
async def test_flat_coverage_stops_stalled(tmp_path: Path) -> None:
    areas = [make_area("a", targets=("org/a",))]
    daemon, runner, _, _ = make_daemon(
        tmp_path, areas, concurrency=1, coverage=FakeCoverage({"org/a": 0.5}), stall_rounds=1,
    )
    await _started(daemon)
    await daemon.tick()
    runner.finish("a", 0)
    await daemon.tick()
    assert daemon.state.round_number == 2

    runner.finish("a", 0)
    await daemon.tick()
    assert daemon.state.stop_reason == "stalled"


@pytest.mark.asyncio
async def test_new_round_clears_activity(tmp_path: Path) -> None:
    daemon, runner, _, _ = make_daemon(tmp_path, _areas("a"), concurrency=1)
    await _started(daemon)
    await daemon.tick()
    runner.active("a").events.append(
        AgentEvent(kind="tool_use", payload={"activity": "Read src/a.ts"}, tool_name="Read"),
    )
    await daemon.tick()
    assert daemon.supervisor.activity("agent-1") == ["Read src/a.ts"]

    runner.finish("a", 0)
    await daemon.tick()
    assert daemon.state.round_number == 2
    assert daemon.supervisor.activity("agent-1") == []


# ---------------------------------------------------------------------------
# failures of the machinery itself
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reset_failure_disables_slot_and_fails_attempt(tmp_path: Path) -> None:
    daemon, runner, workspaces, _ = make_daemon(
        tmp_path, _areas("a", "b", "c"), diagnoser=FakeDiagnoser(),
    )
    await _started(daemon)
    workspaces.fail_reset.add("agent-1")

    await daemon.tick()

    agent1, agent2 = daemon.state.agents
    assert agent1.usable is False
    assert "cannot reset" in agent1.error
    assert agent2.current_task.focus_area.id == "b"
    assert [t.focus_area.id for t in daemon.state.pending_tasks] == ["c", "a"]
    assert daemon.state.pending_tasks[-1].attempts == 1


@pytest.mark.asyncio
async def test_all_slots_disabled_stops_with_error(tmp_path: Path) -> None:
    daemon, _, workspaces, _ = make_daemon(tmp_path, _areas("a"), concurrency=1)
    await _started(daemon)
    workspaces.fail_reset.add("agent-1")

    await daemon.tick()

    assert daemon.state.status == "stopped"
    assert daemon.state.stop_reason == "error"


@pytest.mark.asyncio
async def test_unexpected_os_error_stops_with_error_and_keeps_the_merge(
    tmp_path: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    daemon, runner, workspaces, mainline = make_daemon(tmp_path, _areas("a", "b", "c"), concurrency=2)
    original_tick = daemon.tick
    ticks = 0

    async def tick_then_break_reset() -> None:
        nonlocal ticks
        await original_tick()
        ticks += 1
        if ticks == 1:
            runner.finish("a", 0, files=["src/a.ts"])
            workspaces.crash_reset.add("agent-1")

    daemon.tick = tick_then_break_reset  # type: ignore[method-assign]
    with caplog.at_level(logging.ERROR, logger="paraimprove.coordinator.loop"):
        state = await daemon.run()

    assert state.stop_reason == "error"
    assert len(mainline.picked) == 1
    assert runner.runs_for("b")[0].terminated == "error"
    assert sorted(t.focus_area.id for t in state.pending_tasks) == ["b", "c"]
    reloaded = daemon.store.load()
    assert reloaded is not None
    assert reloaded.stop_reason == "error"
    assert reloaded.merged_files == {"src/a.ts"}
    kinds = [item["type"] for item in read_jsonl(tmp_path / "daemon.events.jsonl")]
    assert kinds[-1] == "daemon.stopped"
    [record] = [r for r in caplog.records if r.name == "paraimprove.coordinator.loop"]
    assert record.getMessage() == "Daemon loop failed in round 1"
    assert record.exc_info is not None


@pytest.mark.asyncio
async def test_merge_is_persisted_before_the_next_dispatch(tmp_path: Path) -> None:
    daemon, runner, _, _ = make_daemon(tmp_path, _areas("a", "b", "c"), concurrency=2)
    await _started(daemon)
    await daemon.tick()
    runner.finish("a", 0, files=["src/a.ts"])
    saved: list[tuple[set[str], int]] = []
    original_save = daemon.store.save

    def recording_save(state) -> None:
        saved.append((set(state.merged_files), state.running_count))
        original_save(state)

    daemon.store.save = recording_save  # type: ignore[method-assign]
    await daemon.tick()

    assert saved[0] == ({"src/a.ts"}, 1)
    assert saved[1] == ({"src/a.ts"}, 2)


@pytest.mark.asyncio
async def test_overdue_task_is_terminated_and_retried(tmp_path: Path) -> None:
    daemon, runner, _, _ = make_daemon(
        tmp_path, _areas("a"), concurrency=1, diagnoser=FakeDiagnoser(), max_task_seconds=60,
    )
    await _started(daemon)
    await daemon.tick()
    task = daemon.state.agents[0].current_task
    task.started_at = (datetime.now(UTC) - timedelta(minutes=5)).isoformat()
    first_run = runner.runs[0]

    await daemon.tick()

    assert first_run.terminated == "task_timeout"
    assert task.error == "task_timeout"
    assert task.attempts == 2


@pytest.mark.asyncio
async def test_request_stop_terminates_agents_and_requeues_in_flight(tmp_path: Path) -> None:
    daemon, runner, _, _ = make_daemon(tmp_path, _areas("a", "b", "c"))
    await _started(daemon)
    await daemon.tick()

    daemon.request_stop()
    await daemon.tick()

    assert daemon.state.status == "stopped"
    assert daemon.state.stop_reason == "interrupted"
    assert all(run.terminated == "interrupted" for run in runner.runs)
    assert [t.focus_area.id for t in daemon.state.pending_tasks] == ["a", "b", "c"]
    assert daemon.state.running_count == 0


@pytest.mark.asyncio
async def test_run_returns_when_complete(tmp_path: Path) -> None:
    areas = [make_area("a", targets=("org/a",))]
    daemon, runner, _, _ = make_daemon(
        tmp_path, areas, concurrency=1, coverage=FakeCoverage({"org/a": 1.0}),
    )
    original_tick = daemon.tick

    async def tick_and_finish() -> None:
        await original_tick()
        for run in runner.runs:
            if not run.finished:
                run.exit_code = 0

    daemon.tick = tick_and_finish  # type: ignore[method-assign]
    state = await daemon.run()

    assert state.status == "stopped"
    assert state.stop_reason == "complete"


# ---------------------------------------------------------------------------
# persistence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_state_and_events_are_persisted_each_tick(tmp_path: Path) -> None:
    daemon, runner, _, _ = make_daemon(tmp_path, _areas("a", "b"))
    await _started(daemon)
    await daemon.tick()
    runner.finish("a", 0, files=["src/a.ts"])
    await daemon.tick()

    reloaded = daemon.store.load()
    assert reloaded is not None
    assert reloaded.merged_files == {"src/a.ts"}
    assert [r.status for r in reloaded.merge_results] == ["merged"]

    kinds = [item["type"] for item in read_jsonl(tmp_path / "daemon.events.jsonl")]
    assert kinds[:2] == ["agent.created", "agent.created"]
    assert "task.assigned" in kinds
    assert "merge.recorded" in kinds
