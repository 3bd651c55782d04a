"""Gap diagnosis: why did an attempt fall short, and what to try next."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from paraimprove.adapters.base import clean_env
from paraimprove.errors import GapDiagnosisError
from paraimprove.protocol.models import GapAnalysis, TaskMetrics

log = logging.getLogger(__name__)


@dataclass(slots=True)
class GapRequest:
    test_target: str
    task_id: str
    detected: TaskMetrics
    expected: TaskMetrics
    attempted_fix_excerpt: str


class GapDiagnoser(Protocol):
    async def diagnose(self, request: GapRequest) -> GapAnalysis: ...


def format_gap_analysis(gap: GapAnalysis) -> str:
    """Render *gap* as the block appended to a retry prompt."""
    lines: list[str] = []
    if gap.root_causes:
        lines.append("Root causes:")
        lines.extend(f"- {item}" for item in gap.root_causes)
    if gap.recommendations:
        lines.append("Recommendations:")
        lines.extend(f"- {item}" for item in gap.recommendations)
    if gap.quirks:
        lines.append("Codebase quirks:")
        lines.extend(f"- {item}" for item in gap.quirks)
    return "\n".join(lines)


def _string_list(data: dict[str, Any], *keys: str) -> list[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, list):
            return [str(item) for item in value if str(item).strip()]
        if isinstance(value, str) and value.strip():
            return [value.strip()]
    return []


def parse_gap_analysis(raw: str, request: GapRequest) -> GapAnalysis:
    """Extract the analysis object from the diagnoser's output."""
    text = raw.strip()
    # ``--output-format json`` wraps the answer in {"result": "..."}
    try:
        envelope = json.loads(text)
    except json.JSONDecodeError:
        envelope = None
    if isinstance(envelope, dict) and isinstance(envelope.get("result"), str):
        text = envelope["result"]
    text = re.sub(r"<thinking>.*?</thinking>", "", text, flags=re.DOTALL)
    text = re.sub(r"```(?:json|JSON)?\s*\n?", "", text)
    match = re.search(r"\{.*\}", text, flags=re.DOTALL)
    if not match:
        raise GapDiagnosisError(f"No JSON object found in diagnoser output ({len(raw)} chars)")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise GapDiagnosisError(f"Diagnoser output is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise GapDiagnosisError("Diagnoser output is not a JSON object")

    gap = GapAnalysis(
        root_causes=_string_list(data, "rootCauses", "root_causes"),
        recommendations=_string_list(data, "recommendations"),
        quirks=_string_list(data, "quirks", "codebaseQuirks"),
        test_target=request.test_target,
        task_id=request.task_id,
    )
    if gap.is_empty():
        raise GapDiagnosisError("Diagnoser returned an empty analysis")
    return gap


class ClaudeGapDiagnoser:
    """Asks a one-shot ``claude -p`` call for a structured gap analysis."""

    def __init__(
        self,
        *,
        binary: str = "claude",
        model: str = "",
        timeout_seconds: float = 120.0,
        cwd: Path | None = None,
    ) -> None:
        self.binary = binary
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.cwd = cwd

    def build_prompt(self, request: GapRequest) -> str:
        return (
            "You are diagnosing why an automated improvement attempt failed.\n\n"
            f"## Test target\n{request.test_target or '(none)'}\n\n"
            "## Metrics\n"
            f"- detected components: {request.detected.component_count}"
            f" (expected {request.expected.component_count})\n"
            f"- detected tokens: {request.detected.token_count}"
            f" (expected {request.expected.token_count})\n\n"
            "## Output of the failed attempt (tail)\n"
            f"{request.attempted_fix_excerpt or '(no output)'}\n\n"
            "## Output Format\n"
            "Respond with ONLY a JSON object (no markdown fences, no explanation):\n"
            '{"rootCauses": ["..."], "recommendations": ["..."], "quirks": ["..."]}\n'
            "Recommendations must describe an approach materially different from the one above."
        )

    def argv(self, prompt: str) -> list[str]:
        cmd = [self.binary, "-p", "--output-format", "json"]
        if self.model:
            cmd.extend(["--model", self.model])
        cmd.append(prompt)
        return cmd

    async def diagnose(self, request: GapRequest) -> GapAnalysis:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv(self.build_prompt(request)),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.cwd) if self.cwd else None,
                env=clean_env(),
            )
        except OSError as exc:
            raise GapDiagnosisError(f"Cannot start {self.binary!r}: {exc}") from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout_seconds,
            )
        except TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise GapDiagnosisError(
                f"Gap diagnosis timed out after {self.timeout_seconds:.0f}s"
            ) from exc

        if proc.returncode != 0:
            stderr_text = (stderr_bytes or b"").decode("utf-8", errors="replace")
            raise GapDiagnosisError(
                f"Gap diagnosis exited {proc.returncode}: {stderr_text[:500]}"
            )
        return parse_gap_analysis((stdout_bytes or b"").decode("utf-8", errors="replace"), request)
