"""Global test fixtures for paraimprove."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A real git repository on ``main`` with one commit."""
    repo = tmp_path / "mainline"
    repo.mkdir()

    def git(*args: str) -> None:
        subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)

    git("init", "-b", "main")
    git("config", "user.email", "daemon@example.com")
    git("config", "user.name", "Daemon Test")
    git("config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("mainline\n", encoding="utf-8")
    (repo / ".gitignore").write_text(".improvement/\n", encoding="utf-8")
    git("add", "-A")
    git("commit", "-m", "initial")
    return repo
