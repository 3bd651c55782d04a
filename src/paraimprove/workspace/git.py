"""Thin wrapper over the git command line."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from paraimprove.errors import GitCommandError

log = logging.getLogger(__name__)


class GitRepo:
    """Runs git commands inside one working tree."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    @property
    def name(self) -> str:
        return self.root.name

    def run(self, *args: str) -> str:
        """Run ``git <args>`` and return stdout, raising GitCommandError on failure."""
        argv = ["git", *args]
        try:
            result = subprocess.run(
                argv,
                cwd=self.root,
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as exc:
            raise GitCommandError(argv, exc.returncode, exc.stderr or exc.stdout or "") from exc
        except OSError as exc:
            raise GitCommandError(argv, -1, str(exc)) from exc
        return result.stdout

    def try_run(self, *args: str) -> bool:
        """Run a best-effort command; failures are logged at debug level."""
        try:
            self.run(*args)
        except GitCommandError as exc:
            log.debug("ignored git failure: %s", exc)
            return False
        return True

    # -- queries -----------------------------------------------------------

    def is_repository(self) -> bool:
        return (self.root / ".git").exists()

    def head(self) -> str:
        return self.run("rev-parse", "HEAD").strip()

    def subject(self, ref: str) -> str:
        return self.run("log", "-1", "--format=%s", ref).strip()

    def commits_between(self, base: str, tip: str = "HEAD") -> list[str]:
        """Commit hashes reachable from *tip* but not from *base*, newest first."""
        out = self.run("log", "--format=%H", f"{base}..{tip}")
        return [line.strip() for line in out.splitlines() if line.strip()]

    def changed_files(self, ref: str) -> set[str]:
        out = self.run("diff-tree", "--no-commit-id", "--name-only", "-r", ref)
        return {line.strip() for line in out.splitlines() if line.strip()}

    def log_oneline(self, *, grep: str, count: int) -> list[str]:
        out = self.run("log", "--oneline", f"--grep={grep}", "--fixed-strings", f"-{count}")
        return [line for line in out.splitlines() if line.strip()]

    # -- mutations ---------------------------------------------------------

    def cherry_pick(self, ref: str) -> None:
        self.run("cherry-pick", ref)

    def abort_cherry_pick(self) -> bool:
        return self.try_run("cherry-pick", "--abort")

    def push(self, remote: str, branch: str) -> None:
        self.run("push", remote, branch)
