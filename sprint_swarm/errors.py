"""
Error taxonomy for Sprint Swarm.

This module provides:
- SwarmError base class for everything raised by the core
- Lifecycle errors (InvalidStateError, TaskNotFoundError, EpicNotFoundError,
  AgentNotFoundError)
- CyclicDependencyError carrying the detected cycles
- GitCommandError / WorkspaceError for version-control failures
- SpendingLimitExceededError raised by the cost accountant

"No capacity" is deliberately not an exception: the assigner returns None and
callers retry on the next cycle. Merge stage failures are reported as
structured results (see merge.MergeOutcome) instead of exceptions.
"""

from __future__ import annotations

from typing import Optional, Sequence


class SwarmError(Exception):
    """Base exception for Sprint Swarm errors."""
    pass


class InvalidStateError(SwarmError):
    """
    Raised when a lifecycle transition is not allowed from the current status.

    This is a caller bug and is never retried automatically.
    """

    def __init__(
        self,
        message: str,
        entity_id: str = "",
        current_status: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.entity_id = entity_id
        self.current_status = current_status


class TaskNotFoundError(SwarmError):
    """Raised when a task id is not known to the ledger."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task '{task_id}' not found")
        self.task_id = task_id


class EpicNotFoundError(SwarmError):
    """Raised when an epic id is not known to the ledger."""

    def __init__(self, epic_id: str) -> None:
        super().__init__(f"Epic '{epic_id}' not found")
        self.epic_id = epic_id


class AgentNotFoundError(SwarmError):
    """Raised when an agent id is not in the configured roster."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent '{agent_id}' not found")
        self.agent_id = agent_id


class CyclicDependencyError(SwarmError):
    """Raised when the task dependency graph contains one or more cycles."""

    def __init__(self, cycles: Sequence[Sequence[str]]) -> None:
        self.cycles = [list(cycle) for cycle in cycles]
        rendered = "; ".join(" -> ".join(cycle + cycle[:1]) for cycle in self.cycles)
        super().__init__(f"Circular dependency detected: {rendered}")


class GitCommandError(SwarmError):
    """Raised when a git subprocess fails or times out."""

    def __init__(
        self,
        message: str,
        args: Sequence[str] = (),
        returncode: int = -1,
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out


class WorkspaceError(SwarmError):
    """Raised when an agent workspace cannot be created or used."""

    def __init__(self, message: str, agent_id: str = "") -> None:
        super().__init__(message)
        self.agent_id = agent_id


class SpendingLimitExceededError(SwarmError):
    """
    Raised when a configured spending limit has been reached.

    Fatal for the call that triggered it, not for the process. Alert
    callbacks have already been invoked by the time this is raised.
    """

    def __init__(self, limit_name: str, current: float, threshold: float) -> None:
        super().__init__(
            f"{limit_name.replace('_', '-').capitalize()} spending limit exceeded: "
            f"${current:.2f} / ${threshold:.2f}"
        )
        self.limit_name = limit_name
        self.current = current
        self.threshold = threshold

