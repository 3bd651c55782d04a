from __future__ import annotations

from pathlib import Path

import pytest

from paraimprove.adapters.base import AgentEvent
from paraimprove.config.schema import PromptConfig
from paraimprove.coordinator.supervisor import AgentSupervisor
from paraimprove.errors import GitCommandError, WorkspaceInitError
from paraimprove.protocol.models import AgentTask, DaemonState, TaskMetrics
from tests.helpers import FakeCoverage, FakeMainline, FakeRunner, FakeWorkspaces, make_area


@pytest.fixture
def rig(tmp_path: Path):
    workspaces = FakeWorkspaces(FakeMainline())
    runner = FakeRunner(workspaces)
    supervisor = AgentSupervisor(
        runner,
        workspaces,  # type: ignore[arg-type]
        prompt=PromptConfig(measure_command="scan {target}"),
        log_dir=tmp_path / "logs",
        coverage=FakeCoverage({"org/ui": 0.3}),
        activity_window=2,
    )
    state = DaemonState(agents=[workspaces.create_workspace("agent-1")])
    return supervisor, runner, workspaces, state


async def _start(rig, area_id: str = "vue"):
    supervisor, _, _, state = rig
    agent = state.agents[0]
    task = AgentTask.create(make_area(area_id, targets=("org/ui",)), 1)
    state.assign(agent, task)
    await supervisor.start_agent(agent, task)
    return agent, task


def _tool(activity: str) -> AgentEvent:
    return AgentEvent(kind="tool_use", payload={"activity": activity}, tool_name=activity.split()[0])


@pytest.mark.asyncio
async def test_start_agent_resets_measures_and_submits(rig) -> None:
    supervisor, runner, workspaces, _ = rig
    agent, task = await _start(rig)

    assert workspaces.resets == ["agent-1"]
    assert task.metrics_before == TaskMetrics(30, 15)
    [run] = runner.runs
    assert run.cwd == Path(agent.workspace_path)
    assert "scan org/ui" in run.prompt
    assert agent.pid == 4242
    assert Path(agent.log_file).name.startswith("agent-1-vue-")
    assert supervisor.is_running("agent-1")


@pytest.mark.asyncio
async def test_start_agent_propagates_reset_failure(rig) -> None:
    supervisor, runner, workspaces, state = rig
    workspaces.fail_reset.add("agent-1")
    task = AgentTask.create(make_area("vue"), 1)

    with pytest.raises(WorkspaceInitError):
        await supervisor.start_agent(state.agents[0], task)
    assert runner.runs == []


@pytest.mark.asyncio
async def test_poll_keeps_a_bounded_activity_window(rig) -> None:
    supervisor, runner, _, _ = rig
    agent, _ = await _start(rig)
    run = runner.active("vue")
    run.events.extend([_tool("Read a.ts"), _tool("Grep x"), _tool("Edit b.ts")])
    run.events.append(AgentEvent(kind="text", payload={"text": "thinking"}))

    assert supervisor.poll(agent) is None
    assert supervisor.activity("agent-1") == ["Grep x", "Edit b.ts"]

    runner.finish("vue", 0)
    assert supervisor.poll(agent) == 0


@pytest.mark.asyncio
async def test_success_requires_exit_zero_and_a_new_commit(rig) -> None:
    supervisor, runner, _, _ = rig
    agent, task = await _start(rig)
    ref = runner.finish("vue", 0, files=["src/vue.ts"], tail="all green")

    completion = supervisor.classify_completion(agent, 0)

    assert completion.outcome == "success"
    assert completion.commit_ref == ref
    assert completion.summary == "feat(scanners): vue - improve"
    assert task.metrics_after == TaskMetrics(30, 15)
    assert not supervisor.is_running("agent-1")


@pytest.mark.asyncio
async def test_exit_zero_without_commit_is_no_change(rig) -> None:
    supervisor, runner, _, _ = rig
    agent, _ = await _start(rig)
    runner.finish("vue", 0)

    assert supervisor.classify_completion(agent, 0).outcome == "no_change"


@pytest.mark.asyncio
async def test_nonzero_exit_is_failure_even_with_commit(rig) -> None:
    supervisor, runner, _, _ = rig
    agent, _ = await _start(rig)
    runner.finish("vue", 1, files=["src/vue.ts"], tail="Error: tests failed")

    completion = supervisor.classify_completion(agent, 1)

    assert completion.outcome == "failure"
    assert completion.reason == "exit code 1"
    assert completion.output_excerpt == "Error: tests failed"


@pytest.mark.asyncio
async def test_timed_out_run_is_a_failure(rig) -> None:
    supervisor, runner, _, _ = rig
    agent, _ = await _start(rig)
    run = runner.active("vue")

    await supervisor.terminate(agent, "task_timeout")

    assert run.terminated == "task_timeout"
    completion = supervisor.classify_completion(agent, supervisor.poll(agent))
    assert completion.outcome == "failure"
    assert completion.reason == "task_timeout"


@pytest.mark.asyncio
async def test_branch_inspection_error_is_a_failure(rig, monkeypatch) -> None:
    supervisor, runner, workspaces, _ = rig
    agent, _ = await _start(rig)
    runner.finish("vue", 0)

    def broken(_agent):
        raise GitCommandError(["git", "log"], 128, "fatal: bad revision")

    monkeypatch.setattr(workspaces, "new_commits", broken)
    completion = supervisor.classify_completion(agent, 0)

    assert completion.outcome == "failure"
    assert "fatal: bad revision" in completion.reason


@pytest.mark.asyncio
async def test_terminate_all_and_clear_activity(rig) -> None:
    supervisor, runner, _, _ = rig
    await _start(rig)
    runner.active("vue").events.append(_tool("Read a.ts"))
    supervisor.poll(rig[3].agents[0])

    await supervisor.terminate_all("interrupted")
    supervisor.clear_activity()

    assert runner.runs[0].terminated == "interrupted"
    assert not supervisor.is_running("agent-1")
    assert supervisor.activity_snapshot() == {}
