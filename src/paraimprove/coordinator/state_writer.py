"""Daemon state snapshot persistence."""

from __future__ import annotations

from pathlib import Path

from paraimprove.protocol.io import read_json, write_json_atomic
from paraimprove.protocol.models import DaemonState

STATE_FILE_NAME = "parallel-daemon-state.json"


class DaemonStateStore:
    """Atomically rewrites the whole DaemonState after every transition."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)

    @property
    def path(self) -> Path:
        return self.state_dir / STATE_FILE_NAME

    def save(self, state: DaemonState) -> None:
        write_json_atomic(self.path, state.to_dict())

    def load(self) -> DaemonState | None:
        raw = read_json(self.path, None)
        if not isinstance(raw, dict):
            return None
        return DaemonState.from_dict(raw)
