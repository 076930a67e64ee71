"""
Thin git subprocess wrapper.

Every call runs `git` with list arguments, captured text output and a hard
timeout. Failures surface as GitCommandError carrying the argv, exit code
and stderr so callers can decide whether they are fatal.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional

from sprint_swarm.errors import GitCommandError

DEFAULT_TIMEOUT = 120


class Git:
    """Runs git commands against a repository (or one of its worktrees)."""

    def __init__(self, repo_root: str | Path, timeout: int = DEFAULT_TIMEOUT) -> None:
        self.repo_root = Path(repo_root)
        self.timeout = timeout
        self._logger = logging.getLogger(__name__)

    def run(
        self,
        *args: str,
        cwd: Optional[str | Path] = None,
        check: bool = True,
        timeout: Optional[int] = None,
    ) -> subprocess.CompletedProcess:
        """
        Run `git <args>`.

        Args:
            cwd: Working directory. Defaults to the repository root.
            check: Raise GitCommandError on a non-zero exit code.
            timeout: Seconds before the command is abandoned.

        Raises:
            GitCommandError: Non-zero exit (when check), timeout, or git missing.
        """
        argv = ["git", *args]
        workdir = str(cwd or self.repo_root)
        limit = timeout or self.timeout
        self._logger.debug("git %s (cwd=%s)", " ".join(args), workdir)

        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                cwd=workdir,
                timeout=limit,
            )
        except subprocess.TimeoutExpired:
            raise GitCommandError(
                f"git {' '.join(args)} timed out after {limit}s",
                args=argv,
                timed_out=True,
            )
        except OSError as e:
            raise GitCommandError(f"Failed to run git: {e}", args=argv)

        if check and result.returncode != 0:
            stderr = result.stderr.strip()
            raise GitCommandError(
                f"git {' '.join(args)} failed: {stderr or result.stdout.strip()}",
                args=argv,
                returncode=result.returncode,
                stderr=stderr,
            )
        return result

    def output(self, *args: str, cwd: Optional[str | Path] = None) -> str:
        """Stripped stdout of a successful command."""
        return self.run(*args, cwd=cwd).stdout.strip()

    def rev_parse(self, ref: str = "HEAD", cwd: Optional[str | Path] = None) -> str:
        return self.output("rev-parse", ref, cwd=cwd)

    def current_branch(self, cwd: Optional[str | Path] = None) -> str:
        return self.output("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)

    def has_remote(self, cwd: Optional[str | Path] = None) -> bool:
        return bool(self.output("remote", cwd=cwd))

    def has_changes(self, cwd: Optional[str | Path] = None) -> bool:
        """True when the working tree has staged, unstaged or untracked changes."""
        return bool(self.output("status", "--porcelain", cwd=cwd))
