"""Per-agent git worktree lifecycle."""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from pathlib import Path

from paraimprove.errors import GitCommandError, WorkspaceInitError
from paraimprove.protocol.models import AgentSlot
from paraimprove.workspace.git import GitRepo

log = logging.getLogger(__name__)

BRANCH_PREFIX = "improvement"


def branch_for(agent_id: str) -> str:
    return f"{BRANCH_PREFIX}/{agent_id}"


class WorkspaceManager:
    """Creates, resets and removes the isolated worktree of each agent.

    Every workspace is a ``git worktree`` of the mainline on its own branch,
    so commits made by an agent are visible to the mainline repository
    without any fetch.
    """

    def __init__(
        self,
        mainline: GitRepo,
        workspaces_root: Path,
        *,
        mainline_branch: str = "main",
        setup_commands: list[str] | None = None,
    ) -> None:
        self.mainline = mainline
        self.workspaces_root = Path(workspaces_root)
        self.mainline_branch = mainline_branch
        self.setup_commands = list(setup_commands or [])

    def path_for(self, agent_id: str) -> Path:
        return self.workspaces_root / f"{self.mainline.name}-{agent_id}"

    def repo_for(self, agent: AgentSlot) -> GitRepo:
        return GitRepo(Path(agent.workspace_path))

    def create_workspace(self, agent_id: str) -> AgentSlot:
        """Materialize a fresh worktree for *agent_id*, replacing any stale one."""
        path = self.path_for(agent_id)
        branch = branch_for(agent_id)
        self._remove(path, branch)

        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.mainline.run("worktree", "add", str(path), "-b", branch, self.mainline_branch)
        except GitCommandError as exc:
            raise WorkspaceInitError(
                f"Cannot create workspace for {agent_id}: {exc}", agent_id=agent_id,
            ) from exc

        for command in self.setup_commands:
            self._run_setup(agent_id, path, command)

        log.info("Created workspace %s on %s", path, branch)
        return AgentSlot(id=agent_id, workspace_path=str(path), branch_name=branch)

    def reset_workspace(self, agent: AgentSlot) -> None:
        """Bring *agent*'s branch to the current mainline with a clean tree."""
        repo = self.repo_for(agent)
        if not Path(agent.workspace_path).is_dir():
            raise WorkspaceInitError(
                f"Workspace for {agent.id} is missing: {agent.workspace_path}", agent_id=agent.id,
            )
        try:
            repo.try_run("rebase", "--abort")
            repo.try_run("cherry-pick", "--abort")
            repo.run("checkout", "--", ".")
            repo.run("clean", "-fd")
            try:
                repo.run("rebase", self.mainline_branch)
            except GitCommandError as exc:
                log.warning("Rebase of %s failed, resetting to %s: %s",
                            agent.branch_name, self.mainline_branch, exc)
                repo.try_run("rebase", "--abort")
            leftover = repo.commits_between(self.mainline_branch)
            if leftover:
                log.info("Dropping %d unmerged commit(s) from %s", len(leftover), agent.branch_name)
                repo.run("reset", "--hard", self.mainline_branch)
        except GitCommandError as exc:
            raise WorkspaceInitError(
                f"Cannot reset workspace for {agent.id}: {exc}", agent_id=agent.id,
            ) from exc

    def new_commits(self, agent: AgentSlot) -> list[str]:
        return self.repo_for(agent).commits_between(self.mainline_branch)

    def head_commit(self, agent: AgentSlot) -> str:
        return self.repo_for(agent).head()

    def commit_subject(self, agent: AgentSlot, ref: str) -> str:
        return self.repo_for(agent).subject(ref)

    def destroy_workspace(self, agent: AgentSlot) -> None:
        self._remove(Path(agent.workspace_path), agent.branch_name)
        log.info("Removed workspace %s", agent.workspace_path)

    def cleanup(self, agents: list[AgentSlot] | None = None) -> list[str]:
        """Remove the given workspaces plus any left under the workspaces root."""
        removed: list[str] = []
        for agent in agents or []:
            self.destroy_workspace(agent)
            removed.append(agent.id)
        prefix = f"{self.mainline.name}-"
        if self.workspaces_root.exists():
            for child in sorted(self.workspaces_root.iterdir()):
                if not child.is_dir() or not child.name.startswith(prefix):
                    continue
                if not (child / ".git").is_file():
                    continue
                agent_id = child.name[len(prefix):]
                if agent_id in removed:
                    continue
                self._remove(child, branch_for(agent_id))
                removed.append(agent_id)
        self.mainline.try_run("worktree", "prune")
        return removed

    def _remove(self, path: Path, branch: str) -> None:
        self.mainline.try_run("worktree", "prune")
        if path.exists():
            if not self.mainline.try_run("worktree", "remove", "--force", str(path)):
                log.warning("git no longer tracks %s, deleting it from disk", path)
            if path.exists():
                shutil.rmtree(path)
            self.mainline.try_run("worktree", "prune")
        self.mainline.try_run("branch", "-D", branch)

    def _run_setup(self, agent_id: str, path: Path, command: str) -> None:
        log.info("[%s] %s", agent_id, command)
        try:
            subprocess.run(
                shlex.split(command),
                cwd=path,
                check=True,
                capture_output=True,
                text=True,
            )
        except (subprocess.CalledProcessError, OSError) as exc:
            stderr = getattr(exc, "stderr", "") or str(exc)
            raise WorkspaceInitError(
                f"Setup command {command!r} failed for {agent_id}: {stderr.strip()[-500:]}",
                agent_id=agent_id,
            ) from exc
