from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from paraimprove.collaborators.gap import (
    ClaudeGapDiagnoser,
    GapRequest,
    format_gap_analysis,
    parse_gap_analysis,
)
from paraimprove.errors import GapDiagnosisError
from paraimprove.protocol.models import GapAnalysis, TaskMetrics


def _request() -> GapRequest:
    return GapRequest(
        test_target="chakra-ui/chakra-ui",
        task_id="react-r1-abc",
        detected=TaskMetrics(40, 10),
        expected=TaskMetrics(100, 50),
        attempted_fix_excerpt="Attempt 1 failed: exit code 1\nTypeError in react-scanner.ts",
    )


def _fake_cli(tmp_path: Path, body: str) -> str:
    script = tmp_path / "fake-claude"
    script.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
    script.chmod(0o755)
    return str(script)


# ---------------------------------------------------------------------------
# parsing
# ---------------------------------------------------------------------------


def test_parse_plain_object() -> None:
    gap = parse_gap_analysis(
        '{"rootCauses": ["memo wrappers skipped"], "recommendations": ["unwrap memo()"], "quirks": []}',
        _request(),
    )
    assert gap.root_causes == ["memo wrappers skipped"]
    assert gap.recommendations == ["unwrap memo()"]
    assert gap.quirks == []
    assert gap.test_target == "chakra-ui/chakra-ui"
    assert gap.task_id == "react-r1-abc"


def test_parse_unwraps_result_envelope_fences_and_thinking() -> None:
    inner = (
        "<thinking>the {braces} here are not the answer</thinking>\n"
        "```json\n"
        '{"root_causes": "single cause", "codebaseQuirks": ["barrel exports"]}\n'
        "```"
    )
    gap = parse_gap_analysis(json.dumps({"type": "result", "result": inner}), _request())

    assert gap.root_causes == ["single cause"]
    assert gap.quirks == ["barrel exports"]


@pytest.mark.parametrize(
    "raw, message",
    [
        ("I could not figure it out", "No JSON object"),
        ("{not json at all}", "not valid JSON"),
        ('{"rootCauses": [], "recommendations": []}', "empty analysis"),
    ],
)
def test_parse_failures(raw: str, message: str) -> None:
    with pytest.raises(GapDiagnosisError, match=message):
        parse_gap_analysis(raw, _request())


def test_format_gap_analysis_sections() -> None:
    text = format_gap_analysis(GapAnalysis(
        root_causes=["a"], recommendations=["b", "c"], quirks=["d"],
    ))
    assert text == (
        "Root causes:\n- a\n"
        "Recommendations:\n- b\n- c\n"
        "Codebase quirks:\n- d"
    )
    assert format_gap_analysis(GapAnalysis(recommendations=["only"])) == "Recommendations:\n- only"


# ---------------------------------------------------------------------------
# diagnoser process
# ---------------------------------------------------------------------------


def test_prompt_and_argv_carry_metrics_and_model() -> None:
    diagnoser = ClaudeGapDiagnoser(model="sonnet")
    prompt = diagnoser.build_prompt(_request())

    assert "detected components: 40 (expected 100)" in prompt
    assert "TypeError in react-scanner.ts" in prompt
    assert diagnoser.argv("P") == ["claude", "-p", "--output-format", "json", "--model", "sonnet", "P"]


@pytest.mark.asyncio
async def test_diagnose_parses_cli_output(tmp_path: Path) -> None:
    binary = _fake_cli(tmp_path, (
        "import json\n"
        "print(json.dumps({'result': json.dumps({'rootCauses': ['x'], 'recommendations': ['y']})}))\n"
    ))
    gap = await ClaudeGapDiagnoser(binary=binary, cwd=tmp_path).diagnose(_request())

    assert gap.root_causes == ["x"]
    assert gap.recommendations == ["y"]


@pytest.mark.asyncio
async def test_diagnose_nonzero_exit_raises(tmp_path: Path) -> None:
    binary = _fake_cli(tmp_path, "import sys\nsys.stderr.write('rate limited')\nsys.exit(2)\n")
    with pytest.raises(GapDiagnosisError, match="exited 2: rate limited"):
        await ClaudeGapDiagnoser(binary=binary).diagnose(_request())


@pytest.mark.asyncio
async def test_diagnose_timeout_raises(tmp_path: Path) -> None:
    binary = _fake_cli(tmp_path, "import time\ntime.sleep(30)\n")
    with pytest.raises(GapDiagnosisError, match="timed out"):
        await ClaudeGapDiagnoser(binary=binary, timeout_seconds=0.5).diagnose(_request())


@pytest.mark.asyncio
async def test_diagnose_missing_binary_raises(tmp_path: Path) -> None:
    diagnoser = ClaudeGapDiagnoser(binary=str(tmp_path / "no-such-cli"))
    with pytest.raises(GapDiagnosisError, match="Cannot start"):
        await diagnoser.diagnose(_request())
