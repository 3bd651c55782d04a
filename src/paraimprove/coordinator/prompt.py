"""Prompt construction for improvement agents."""

from __future__ import annotations

from pathlib import PurePosixPath

from paraimprove.collaborators.gap import format_gap_analysis
from paraimprove.config.schema import PromptConfig
from paraimprove.protocol.models import AgentSlot, AgentTask


def _test_file_hint(path: str) -> str:
    p = PurePosixPath(path)
    return str(p.with_name(f"{p.stem}.test{p.suffix}")) if p.suffix else f"{path}.test"


def build_agent_prompt(
    agent: AgentSlot,
    task: AgentTask,
    cfg: PromptConfig,
    *,
    max_attempts: int = 3,
) -> str:
    area = task.focus_area
    files = sorted(area.owned_files)
    file_list = "\n".join(f"- `{f}`" for f in files)
    targets = list(area.test_targets)
    first_target = targets[0] if targets else ""

    if cfg.measure_command and first_target:
        measure = cfg.measure_command.replace("{target}", first_target)
        cwd = cfg.measure_cwd or agent.workspace_path
        measure_step = (
            "1. **Measure the baseline** on your test target:\n"
            f"   ```bash\n   cd {cwd}\n   {measure}\n   ```\n"
        )
    else:
        measure_step = "1. **Measure the baseline** behaviour of your focus area.\n"

    test_step = ""
    if cfg.test_command:
        test_step = f"   ```bash\n   cd {agent.workspace_path}\n   {cfg.test_command}\n   ```\n"

    prompt = (
        f"# {cfg.title}\n\n"
        f"You are **{agent.id}**, focused on: **{area.name}**\n\n"
        "## Your Focus Area\n\n"
        f"**Task:** {area.description or area.name}\n\n"
        f"**Your files (ONLY modify these):**\n{file_list}\n\n"
        "**Test against:**\n"
        + ("\n".join(f"- {t}" for t in targets) or "- (no test targets)")
        + "\n\n"
        "## Environment\n"
        f"- Workspace: `{agent.workspace_path}`\n"
        f"- Branch: `{agent.branch_name}`\n\n"
        "This is YOUR isolated workspace. Other agents are working on different areas.\n\n"
        "## File Boundaries\n\n"
        "You may ONLY create or modify the files listed above. "
        "If a file doesn't exist, create it. Do NOT modify any other file.\n\n"
        "## Mission\n\n"
        f"{measure_step}"
        f"2. **Write a failing check** that captures what is missing (e.g. `{_test_file_hint(files[0])}`).\n"
        "3. **Implement the fix** in your assigned files ONLY.\n"
        "4. **Run the tests:**\n"
        f"{test_step}"
        "5. **Re-measure** and compare against the baseline.\n"
        "6. **Commit ONLY if the measurement improved:**\n"
        "   ```bash\n"
        "   git add -A\n"
        f'   git commit -m "{cfg.commit_prefix}: {area.id} - [what you improved]"\n'
        "   ```\n\n"
        "## Rules\n"
        f"- ONLY modify: {', '.join(files)}\n"
        "- Write the check BEFORE fixing code\n"
        "- ALL tests must pass\n"
        "- ONLY commit if the measurement improved\n"
        "- NEVER read .env, credentials, or API key files\n"
    )

    if task.gap_analysis is not None and not task.gap_analysis.is_empty():
        prompt += (
            f"\n## Previous Attempt Analysis (Attempt {task.attempts}/{max_attempts})\n\n"
            "Your previous attempt didn't improve the result. The gap analysis found:\n\n"
            f"{format_gap_analysis(task.gap_analysis)}\n\n"
            "**IMPORTANT:** Try a materially DIFFERENT approach based on this analysis. "
            "Do not repeat the same fix.\n"
        )

    if first_target:
        prompt += f"\nStart by measuring {first_target}.\n"
    return prompt
