"""YAML config loader for paraimprove."""

from __future__ import annotations

from importlib import resources
from pathlib import Path
from typing import Any

import yaml

from paraimprove.config.schema import (
    AgentConfig,
    CoverageConfig,
    DaemonYamlConfig,
    FocusAreaConfig,
    GapConfig,
    MergeConfig,
    PromptConfig,
    RetryConfig,
    RunConfig,
    WorkspaceConfig,
)
from paraimprove.errors import ConfigError

DEFAULT_CONFIG_NAME = "paraimprove.yaml"
SUPPORTED_BACKENDS = {"claude", "command"}


def load_daemon_yaml(path: str | Path) -> DaemonYamlConfig:
    p = Path(path)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) if p.exists() else {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raw = {}

    cfg = DaemonYamlConfig(
        version=int(raw.get("version", 1)),
        source_path=str(p.resolve()),
        run=RunConfig(**_pick(_section(raw, "run"), RunConfig)),
        agent=AgentConfig(**_pick(_section(raw, "agent"), AgentConfig)),
        workspace=WorkspaceConfig(**_pick(_section(raw, "workspace"), WorkspaceConfig)),
        prompt=PromptConfig(**_pick(_section(raw, "prompt"), PromptConfig)),
        retries=RetryConfig(**_pick(_section(raw, "retries"), RetryConfig)),
        merge=MergeConfig(**_pick(_section(raw, "merge"), MergeConfig)),
        coverage=CoverageConfig(**_pick(_section(raw, "coverage"), CoverageConfig)),
        gap=GapConfig(**_pick(_section(raw, "gap"), GapConfig)),
        focus_areas=_focus_areas(raw.get("focus_areas", [])),
    )
    validate_config(cfg)
    return cfg


def validate_config(cfg: DaemonYamlConfig) -> None:
    if cfg.run.concurrency < 1:
        raise ConfigError(f"run.concurrency must be >= 1, got {cfg.run.concurrency}")
    if cfg.run.poll_interval_seconds <= 0:
        raise ConfigError("run.poll_interval_seconds must be positive")
    if cfg.retries.max_attempts < 1:
        raise ConfigError("retries.max_attempts must be >= 1")
    if cfg.coverage.stall_rounds < 1:
        raise ConfigError("coverage.stall_rounds must be >= 1")
    if cfg.agent.max_task_seconds < 0:
        raise ConfigError("agent.max_task_seconds must be >= 0")
    if cfg.agent.activity_window < 1:
        raise ConfigError("agent.activity_window must be >= 1")
    backend = cfg.agent.backend.lower()
    if backend not in SUPPORTED_BACKENDS:
        raise ConfigError(f"Unsupported agent backend: {cfg.agent.backend!r}")
    if backend == "command" and not cfg.agent.command:
        raise ConfigError("agent.command is required for the 'command' backend")


def resolve_path(cfg: DaemonYamlConfig, value: str) -> Path:
    """Resolve *value* against the directory holding the config file."""
    path = Path(value).expanduser()
    if path.is_absolute():
        return path
    base = Path(cfg.source_path).parent if cfg.source_path else Path.cwd()
    return (base / path).resolve()


def mainline_dir(cfg: DaemonYamlConfig) -> Path:
    return resolve_path(cfg, cfg.run.mainline_dir)


def state_dir(cfg: DaemonYamlConfig) -> Path:
    return resolve_path(cfg, cfg.run.state_dir)


def workspaces_dir(cfg: DaemonYamlConfig) -> Path:
    if cfg.run.workspaces_dir:
        return resolve_path(cfg, cfg.run.workspaces_dir)
    return mainline_dir(cfg).parent


def default_config_text() -> str:
    """The packaged starter configuration written by ``paraimprove init``."""
    return resources.files("paraimprove.config").joinpath("default.yaml").read_text(encoding="utf-8")


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def _focus_areas(raw_items: Any) -> list[FocusAreaConfig]:
    areas: list[FocusAreaConfig] = []
    if not isinstance(raw_items, list):
        return areas
    for item in raw_items:
        if not isinstance(item, dict) or "id" not in item:
            continue
        picked = _pick(item, FocusAreaConfig)
        picked["id"] = str(picked["id"])
        picked.setdefault("name", picked["id"])
        picked["files"] = [str(f) for f in picked.get("files") or []]
        picked["test_targets"] = [str(t) for t in picked.get("test_targets") or []]
        areas.append(FocusAreaConfig(**picked))
    return areas


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
