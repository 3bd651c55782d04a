"""Configuration schema for paraimprove YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class RunConfig:
    mainline_dir: str = "."
    mainline_branch: str = "main"
    remote: str = "origin"
    state_dir: str = ".improvement"
    workspaces_dir: str = ""  # empty = parent directory of mainline_dir
    poll_interval_seconds: float = 5.0
    concurrency: int = 3


@dataclass(slots=True)
class AgentConfig:
    backend: str = "claude"  # claude | command
    model: str = ""  # empty string = use the tool's own default model
    command: list[str] | None = None
    max_task_seconds: float = 0.0  # 0 disables the per-task timeout
    activity_window: int = 5


@dataclass(slots=True)
class WorkspaceConfig:
    setup_commands: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PromptConfig:
    title: str = "Improvement Agent"
    measure_command: str = ""  # may contain {target}
    measure_cwd: str = ""
    test_command: str = ""
    commit_prefix: str = "feat(scanners)"


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 3


@dataclass(slots=True)
class MergeConfig:
    push: bool = True
    reason_max_chars: int = 200


@dataclass(slots=True)
class CoverageConfig:
    results_dir: str = "results"
    target: float = 1.0
    stall_rounds: int = 3


@dataclass(slots=True)
class GapConfig:
    enabled: bool = True
    binary: str = "claude"
    model: str = ""
    timeout_seconds: float = 120.0
    excerpt_chars: int = 2000


@dataclass(slots=True)
class FocusAreaConfig:
    id: str
    name: str = ""
    description: str = ""
    files: list[str] = field(default_factory=list)
    test_targets: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DaemonYamlConfig:
    version: int = 1
    source_path: str = ""
    run: RunConfig = field(default_factory=RunConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    prompt: PromptConfig = field(default_factory=PromptConfig)
    retries: RetryConfig = field(default_factory=RetryConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    coverage: CoverageConfig = field(default_factory=CoverageConfig)
    gap: GapConfig = field(default_factory=GapConfig)
    focus_areas: list[FocusAreaConfig] = field(default_factory=list)
