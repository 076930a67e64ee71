"""
Per-agent git worktrees for Sprint Swarm.

Each agent gets its own worktree at <repo>/<worktrees_root>/<agent_id> on
branch <branch_prefix><agent_id>, so two agents never share a filesystem
path or a branch. This module handles:
- Creating worktrees on demand and rebuilding the map after a restart
- Idempotent removal with a force-delete fallback
- Status (ahead/behind trunk, changed files) for merge readiness
- Syncing a workspace with trunk
- Commits, checkpoint tags, rollback and push inside a workspace
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from sprint_swarm.errors import GitCommandError, WorkspaceError
from sprint_swarm.git_ops import Git
from sprint_swarm.models import Workspace
from sprint_swarm.utils.fs import ensure_dir, force_remove_dir

if TYPE_CHECKING:
    from sprint_swarm.config import SwarmConfig
    from sprint_swarm.logger import SwarmLogger


CHECKPOINT_PREFIX = "checkpoint"


@dataclass
class WorkspaceStatus:
    """Read-only diagnostic of one agent workspace."""
    agent_id: str
    exists: bool = False
    path: Optional[str] = None
    branch: Optional[str] = None
    has_uncommitted_changes: bool = False
    commits_ahead: int = 0
    commits_behind: int = 0
    files: dict[str, list[str]] = field(
        default_factory=lambda: {"added": [], "modified": [], "deleted": []}
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "exists": self.exists,
            "path": self.path,
            "branch": self.branch,
            "has_uncommitted_changes": self.has_uncommitted_changes,
            "commits_ahead": self.commits_ahead,
            "commits_behind": self.commits_behind,
            "files": {k: list(v) for k, v in self.files.items()},
        }


def parse_worktree_list(porcelain: str) -> list[dict[str, str]]:
    """Parse `git worktree list --porcelain` into dicts with path/head/branch."""
    entries = []
    for block in porcelain.split("\n\n"):
        if not block.strip():
            continue
        entry: dict[str, str] = {}
        for line in block.splitlines():
            key, _, value = line.partition(" ")
            if key == "worktree":
                entry["path"] = value
            elif key == "HEAD":
                entry["head"] = value
            elif key == "branch":
                entry["branch"] = value.removeprefix("refs/heads/")
            elif key in ("detached", "bare", "locked", "prunable"):
                entry[key] = value or "true"
        if "path" in entry:
            entries.append(entry)
    return entries


def classify_status_lines(porcelain: str) -> dict[str, list[str]]:
    """Bucket `git status --porcelain` lines into added/modified/deleted."""
    files: dict[str, list[str]] = {"added": [], "modified": [], "deleted": []}
    for line in porcelain.splitlines():
        if not line.strip():
            continue
        code, name = line[:2], line[3:]
        if code == "??" or "A" in code:
            files["added"].append(name)
        elif "M" in code or "R" in code:
            files["modified"].append(name)
        elif "D" in code:
            files["deleted"].append(name)
    return files


class WorkspaceManager:
    """
    Owns the agent -> worktree mapping.

    Per-agent locks serialize operations on one workspace; different agents
    never block each other.
    """

    def __init__(
        self,
        repo_root: str | Path,
        trunk: str = "main",
        worktrees_root: str = ".worktrees",
        branch_prefix: str = "worktree/",
        git_timeout: int = 120,
        logger: Optional[SwarmLogger] = None,
    ) -> None:
        self.repo_root = Path(repo_root).resolve()
        self.trunk = trunk
        self.worktrees_root = worktrees_root
        self.root = self.repo_root / worktrees_root
        self.branch_prefix = branch_prefix
        self.git = Git(self.repo_root, timeout=git_timeout)
        self._logger = logger
        self._diag = logging.getLogger(__name__)
        self._paths: dict[str, Path] = {}
        self._map_lock = threading.Lock()
        self._agent_locks: dict[str, threading.RLock] = {}

    @classmethod
    def from_config(
        cls,
        config: SwarmConfig,
        logger: Optional[SwarmLogger] = None,
    ) -> WorkspaceManager:
        return cls(
            repo_root=config.repo_root,
            trunk=config.trunk,
            worktrees_root=config.git.worktrees_root,
            branch_prefix=config.git.branch_prefix,
            git_timeout=config.git.command_timeout_seconds,
            logger=logger,
        )

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level, component="workspace")

    def _lock_for(self, agent_id: str) -> threading.RLock:
        with self._map_lock:
            lock = self._agent_locks.get(agent_id)
            if lock is None:
                lock = self._agent_locks[agent_id] = threading.RLock()
            return lock

    def branch_for(self, agent_id: str) -> str:
        return f"{self.branch_prefix}{agent_id}"

    def path_for(self, agent_id: str) -> Path:
        return self.root / agent_id

    def _require_path(self, agent_id: str) -> Path:
        path = self.get_path(agent_id)
        if path is None:
            raise WorkspaceError(f"No workspace for agent '{agent_id}'", agent_id=agent_id)
        return path

    # Lifecycle

    def initialize(self) -> None:
        """Prune stale registrations and rebuild the map from git."""
        self.git.run("worktree", "prune", check=False)
        self._exclude_worktrees_root()

        found: dict[str, Path] = {}
        for entry in self.list_worktrees():
            path = Path(entry["path"]).resolve()
            if path.parent == self.root.resolve() and path.is_dir():
                found[path.name] = path

        with self._map_lock:
            self._paths = found
        if found:
            self._log("workspaces_reconstructed", {"agents": sorted(found)})

    def _exclude_worktrees_root(self) -> None:
        """Keep worktrees out of the main checkout's `git status`."""
        try:
            git_dir = Path(self.git.output("rev-parse", "--git-common-dir"))
        except GitCommandError:
            return
        if not git_dir.is_absolute():
            git_dir = self.repo_root / git_dir
        exclude = git_dir / "info" / "exclude"
        pattern = f"/{self.worktrees_root.strip('/')}/"
        existing = exclude.read_text() if exclude.exists() else ""
        if pattern not in existing.splitlines():
            ensure_dir(exclude.parent)
            with open(exclude, "a") as f:
                if existing and not existing.endswith("\n"):
                    f.write("\n")
                f.write(pattern + "\n")

    def ensure(self, agent_id: str) -> Path:
        """
        Return the agent's worktree, creating it if absent.

        An existing agent branch (left by a crashed run) is reattached
        instead of failing.

        Raises:
            WorkspaceError: The worktree could not be created.
        """
        with self._lock_for(agent_id):
            existing = self.get_path(agent_id)
            if existing is not None and existing.is_dir():
                return existing

            path = self.path_for(agent_id)
            branch = self.branch_for(agent_id)
            self._clear_stale(path)
            ensure_dir(self.root)

            try:
                self.git.run("worktree", "add", "-b", branch, str(path), self.trunk)
                self._log("workspace_created", {"agent_id": agent_id, "branch": branch})
            except GitCommandError as e:
                if "already exists" not in e.stderr:
                    self._diag.warning("worktree add failed for %s: %s", agent_id, e)
                self._attach_existing_branch(agent_id, path, branch)

            with self._map_lock:
                self._paths[agent_id] = path
            return path

    def _clear_stale(self, path: Path) -> None:
        self.git.run("worktree", "remove", "--force", str(path), check=False)
        if path.exists():
            self._log("workspace_stale_dir_removed", {"path": str(path)}, level="warn")
            force_remove_dir(path)
        self.git.run("worktree", "prune", check=False)

    def _attach_existing_branch(self, agent_id: str, path: Path, branch: str) -> None:
        try:
            self.git.run("worktree", "add", str(path), branch)
            self._log("workspace_attached", {"agent_id": agent_id, "branch": branch})
            return
        except GitCommandError as e:
            self._log("workspace_attach_failed", {
                "agent_id": agent_id,
                "error": str(e),
            }, level="warn")

        try:
            self.git.run("worktree", "add", "--force", str(path), branch)
            self._log("workspace_force_created", {"agent_id": agent_id, "branch": branch}, level="warn")
        except GitCommandError as e:
            self._log("workspace_create_failed", {
                "agent_id": agent_id,
                "error": str(e),
            }, level="error")
            raise WorkspaceError(
                f"Failed to create workspace for {agent_id}: {e}", agent_id=agent_id
            ) from e

    def remove(self, agent_id: str) -> bool:
        """
        Remove the agent's worktree. Returns False if there was nothing to remove.

        Never raises for git failures; falls back to deleting the directory.
        The mapping is cleared in every case.
        """
        with self._lock_for(agent_id):
            path = self.get_path(agent_id)
            if path is None and self.path_for(agent_id).exists():
                path = self.path_for(agent_id)
            if path is None:
                return False

            try:
                self.git.run("worktree", "remove", "--force", str(path))
                self._log("workspace_removed", {"agent_id": agent_id})
            except GitCommandError as e:
                self._log("workspace_remove_failed", {
                    "agent_id": agent_id,
                    "error": str(e),
                }, level="warn")
                force_remove_dir(path)
                self.git.run("worktree", "prune", check=False)
            finally:
                with self._map_lock:
                    self._paths.pop(agent_id, None)
            return True

    def cleanup_all(self) -> list[str]:
        """Remove every known workspace. Returns the agent ids removed."""
        removed = [agent_id for agent_id in list(self._snapshot()) if self.remove(agent_id)]
        self._log("workspaces_cleaned", {"agents": removed})
        return removed

    # Queries

    def _snapshot(self) -> dict[str, Path]:
        with self._map_lock:
            return dict(self._paths)

    def get_path(self, agent_id: str) -> Optional[Path]:
        with self._map_lock:
            return self._paths.get(agent_id)

    def exists(self, agent_id: str) -> bool:
        path = self.get_path(agent_id)
        return path is not None and path.is_dir()

    def workspaces(self) -> list[Workspace]:
        return [
            Workspace(
                agent_id=agent_id,
                path=str(path),
                branch=self.branch_for(agent_id),
                exists=path.is_dir(),
            )
            for agent_id, path in sorted(self._snapshot().items())
        ]

    def list_worktrees(self) -> list[dict[str, str]]:
        """Every worktree git knows about, including the main checkout."""
        result = self.git.run("worktree", "list", "--porcelain", check=False)
        if result.returncode != 0:
            return []
        return parse_worktree_list(result.stdout)

    def status(self, agent_id: str) -> WorkspaceStatus:
        """Diagnostic status. Absent workspaces report exists=False."""
        path = self.get_path(agent_id)
        if path is None or not path.is_dir():
            return WorkspaceStatus(agent_id=agent_id)

        status = WorkspaceStatus(agent_id=agent_id, exists=True, path=str(path))
        try:
            status.branch = self.git.current_branch(cwd=path)
            porcelain = self.git.run("status", "--porcelain", cwd=path).stdout
            status.files = classify_status_lines(porcelain)
            status.has_uncommitted_changes = bool(porcelain.strip())
        except GitCommandError as e:
            self._log("workspace_status_failed", {"agent_id": agent_id, "error": str(e)}, level="warn")
            return status

        counts = self.git.run(
            "rev-list", "--left-right", "--count", f"{self.trunk}...HEAD",
            cwd=path, check=False,
        )
        if counts.returncode == 0:
            behind, _, ahead = counts.stdout.strip().partition("\t")
            status.commits_behind = int(behind or 0)
            status.commits_ahead = int(ahead or 0)
        return status

    # Operations inside a workspace

    def sync_with_trunk(self, agent_id: str) -> None:
        """
        Merge trunk into the agent branch.

        Raises:
            WorkspaceError: No workspace for the agent.
            GitCommandError: Merge failed; the merge has been aborted.
        """
        with self._lock_for(agent_id):
            path = self._require_path(agent_id)
            try:
                self.git.run("merge", self.trunk, "--no-edit", cwd=path)
            except GitCommandError:
                self.git.run("merge", "--abort", cwd=path, check=False)
                self._log("workspace_sync_failed", {"agent_id": agent_id}, level="warn")
                raise
            self._log("workspace_synced", {"agent_id": agent_id, "trunk": self.trunk})

    def commit(self, agent_id: str, task_id: str, message: str) -> Optional[str]:
        """
        Stage everything and commit. Returns the commit hash, or None when clean.

        The agent is recorded as commit author.
        """
        with self._lock_for(agent_id):
            path = self._require_path(agent_id)
            self.git.run("add", "-A", cwd=path)
            if not self.git.has_changes(cwd=path):
                self._log("workspace_commit_skipped", {"agent_id": agent_id, "task_id": task_id}, level="debug")
                return None

            full_message = f"[{task_id}] {message}\n\nAgent: {agent_id}\nTask: {task_id}\n"
            self.git.run(
                "-c", f"user.name={agent_id}",
                "-c", f"user.email={agent_id}@sprint-swarm.local",
                "commit", "-m", full_message,
                cwd=path,
            )
            commit_hash = self.git.rev_parse("HEAD", cwd=path)
            self._log("workspace_committed", {
                "agent_id": agent_id,
                "task_id": task_id,
                "commit": commit_hash,
            })
            return commit_hash

    def create_checkpoint(self, agent_id: str, task_id: str, description: str) -> str:
        """Tag the workspace HEAD as checkpoint/<task_id>/<ms>. Returns the tag."""
        with self._lock_for(agent_id):
            path = self._require_path(agent_id)
            stamp = int(time.time() * 1000)
            while True:
                tag = f"{CHECKPOINT_PREFIX}/{task_id}/{stamp}"
                exists = self.git.run(
                    "show-ref", "--verify", "--quiet", f"refs/tags/{tag}",
                    cwd=path, check=False,
                )
                if exists.returncode != 0:
                    break
                stamp += 1

            self.git.run(
                "-c", f"user.name={agent_id}",
                "-c", f"user.email={agent_id}@sprint-swarm.local",
                "tag", "-a", tag, "-m", description,
                cwd=path,
            )
            self._log("checkpoint_created", {"agent_id": agent_id, "task_id": task_id, "tag": tag})
            return tag

    def latest_checkpoint(self, agent_id: str, task_id: str) -> Optional[str]:
        """Most recent checkpoint tag for a task, if any. Tags are shared by all worktrees."""
        output = self.git.run(
            "tag", "--list", f"{CHECKPOINT_PREFIX}/{task_id}/*",
            cwd=self.get_path(agent_id), check=False,
        ).stdout
        tags = [line.strip() for line in output.splitlines() if line.strip()]
        stamped = [
            (int(tag.rsplit("/", 1)[1]), tag)
            for tag in tags
            if tag.rsplit("/", 1)[1].isdigit()
        ]
        if not stamped:
            return None
        return max(stamped)[1]

    def rollback(self, agent_id: str, ref: str) -> None:
        """Hard-reset the workspace to ref and drop untracked files."""
        with self._lock_for(agent_id):
            path = self._require_path(agent_id)
            self.git.run("reset", "--hard", ref, cwd=path)
            self.git.run("clean", "-fd", cwd=path)
            self._log("workspace_rolled_back", {"agent_id": agent_id, "ref": ref}, level="warn")

    def push(self, agent_id: str) -> bool:
        """Push the agent branch. A missing remote or failed push is only a warning."""
        with self._lock_for(agent_id):
            path = self._require_path(agent_id)
            branch = self.branch_for(agent_id)
            try:
                if not self.git.has_remote(cwd=path):
                    self._log("workspace_push_skipped", {"agent_id": agent_id, "reason": "no remote"}, level="warn")
                    return False
                self.git.run("push", "-u", "origin", branch, cwd=path)
            except GitCommandError as e:
                self._log("workspace_push_failed", {"agent_id": agent_id, "error": str(e)}, level="warn")
                return False
            self._log("workspace_pushed", {"agent_id": agent_id, "branch": branch})
            return True
