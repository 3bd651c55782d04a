"""Runner registry for built-in agent backends."""

from __future__ import annotations

from paraimprove.adapters.base import AgentRunner, SubprocessAgentRunner
from paraimprove.adapters.claude import ClaudeStreamInterpreter, claude_argv
from paraimprove.config.schema import AgentConfig


def get_runner(cfg: AgentConfig) -> AgentRunner:
    b = cfg.backend.lower()
    if b == "claude":
        return SubprocessAgentRunner(claude_argv(cfg.model), ClaudeStreamInterpreter)
    if b == "command":
        # Custom commands speak the same stream-json protocol on stdout.
        return SubprocessAgentRunner(list(cfg.command or []), ClaudeStreamInterpreter)
    raise ValueError(f"Unsupported backend: {cfg.backend}")
