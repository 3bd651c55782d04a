"""Daemon error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and reporting."""

    WORKSPACE_INIT = "workspace_init"
    AGENT_EXECUTION = "agent_execution"
    MERGE_CONFLICT = "merge_conflict"
    MERGE_SKIPPED = "merge_skipped"
    STREAM_PARSE_NOISE = "stream_parse_noise"
    GAP_DIAGNOSIS = "gap_diagnosis"
    CONFIGURATION = "configuration"
    GIT = "git"
    INTERNAL = "internal"


class DaemonError(Exception):
    """Base error for all daemon exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class ConfigError(DaemonError):
    """Invalid configuration (bad values, overlapping focus areas)."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, **kwargs)


class GitCommandError(DaemonError):
    """A git invocation exited non-zero or could not be started."""

    def __init__(
        self,
        argv: list[str],
        returncode: int,
        stderr: str = "",
        **kwargs: Any,
    ) -> None:
        detail = stderr.strip() or f"exit code {returncode}"
        super().__init__(f"{' '.join(argv)}: {detail}", category=ErrorCategory.GIT, **kwargs)
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr


class WorkspaceInitError(DaemonError):
    """An agent workspace could not be created or reset.

    Fatal to the slot; fatal to the daemon when raised during initialization.
    """

    def __init__(self, message: str, *, agent_id: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.WORKSPACE_INIT, **kwargs)
        self.agent_id = agent_id


class AgentExecutionFailure(DaemonError):
    """The agent process failed, produced no commit, or timed out."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        retryable: bool = True,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message, category=ErrorCategory.AGENT_EXECUTION, retryable=retryable, **kwargs,
        )
        self.exit_code = exit_code


class MergeConflict(DaemonError):
    """A commit could not be integrated into the mainline."""

    def __init__(self, message: str, *, commit_ref: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.MERGE_CONFLICT, **kwargs)
        self.commit_ref = commit_ref


class GapDiagnosisError(DaemonError):
    """The gap diagnoser could not produce an analysis."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.GAP_DIAGNOSIS, retryable=True, **kwargs)
