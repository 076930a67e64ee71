"""
Core data models for Sprint Swarm.

This module defines the data structures shared across the system:
- Enums for task and epic status
- Dataclasses for tasks, epics, agent profiles, workspaces and usage records
- Derived statistics containers (never persisted)
- JSON serialization support for all persisted models
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Optional


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string with a Z suffix."""
    return utc_now().isoformat().replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp written by now_iso() (or any aware/naive ISO string)."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TaskStatus(Enum):
    """
    Lifecycle of a task.

    PENDING -> IN_PROGRESS -> COMPLETED is the normal flow.
    Any non-terminal status may move to BLOCKED; BLOCKED goes back to PENDING.
    """
    PENDING = auto()
    IN_PROGRESS = auto()
    COMPLETED = auto()
    BLOCKED = auto()


class EpicStatus(Enum):
    """Lifecycle of an epic."""
    PENDING = auto()
    IN_PROGRESS = auto()
    COMPLETED = auto()


@dataclass
class Task:
    """
    A discrete unit of work.

    Owned by the Ledger. Other components receive copies and must go through
    Ledger lifecycle methods to change status or assignment.
    """
    id: str                          # e.g. "TASK-007"
    title: str
    description: str = ""
    story_points: int = 1
    dependencies: list[str] = field(default_factory=list)  # Task ids, ordered
    team: int = 1
    sprint: int = 1
    status: TaskStatus = TaskStatus.PENDING
    assigned_to: Optional[str] = None    # Agent id
    started_at: Optional[str] = None     # ISO format timestamp
    completed_at: Optional[str] = None   # ISO format timestamp
    blocked_reason: Optional[str] = None
    epic_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Create from dictionary."""
        data = data.copy()
        data["status"] = TaskStatus[data.get("status", "PENDING")]
        data["dependencies"] = list(data.get("dependencies", []))
        return cls(**data)

    def copy(self) -> Task:
        """Detached copy; mutating it never affects the ledger."""
        return Task.from_dict(self.to_dict())


@dataclass
class Epic:
    """
    A coarse unit of work decomposed into tasks.

    Progress is derived from child task statuses on demand, never stored.
    """
    id: str                          # e.g. "EPIC-001"
    title: str
    description: str = ""
    estimated_story_points: int = 0
    team: int = 1
    sprint: int = 1
    status: EpicStatus = EpicStatus.PENDING
    created_at: str = ""
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    task_ids: list[str] = field(default_factory=list)  # Append-only, no duplicates

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = now_iso()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Epic:
        """Create from dictionary."""
        data = data.copy()
        data["status"] = EpicStatus[data.get("status", "PENDING")]
        data["task_ids"] = list(data.get("task_ids", []))
        return cls(**data)

    def copy(self) -> Epic:
        """Detached copy."""
        return Epic.from_dict(self.to_dict())


@dataclass
class StatusCounts:
    """Task counts and story-point sums for one grouping (overall, team, sprint, epic)."""
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    blocked: int = 0
    story_points: int = 0
    completed_story_points: int = 0

    def add(self, task: Task) -> None:
        """Fold one task into the counts."""
        self.total += 1
        self.story_points += task.story_points
        if task.status == TaskStatus.PENDING:
            self.pending += 1
        elif task.status == TaskStatus.IN_PROGRESS:
            self.in_progress += 1
        elif task.status == TaskStatus.COMPLETED:
            self.completed += 1
            self.completed_story_points += task.story_points
        elif task.status == TaskStatus.BLOCKED:
            self.blocked += 1

    @property
    def percent_complete(self) -> float:
        """Completed story points as a percentage of all story points."""
        if self.story_points == 0:
            return 0.0
        return 100.0 * self.completed_story_points / self.story_points

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["percent_complete"] = round(self.percent_complete, 2)
        return data


@dataclass
class LedgerStatistics:
    """Aggregated task statistics, computed fresh on every query."""
    overall: StatusCounts = field(default_factory=StatusCounts)
    by_team: dict[int, StatusCounts] = field(default_factory=dict)
    by_sprint: dict[int, StatusCounts] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall.to_dict(),
            "by_team": {str(k): v.to_dict() for k, v in sorted(self.by_team.items())},
            "by_sprint": {str(k): v.to_dict() for k, v in sorted(self.by_sprint.items())},
        }


@dataclass
class AgentProfile:
    """
    Static description of a worker agent, loaded from configuration.

    Runtime load (in-flight tasks) lives in agents.AgentRuntimeState.
    """
    id: str
    name: str = ""
    role: str = "developer"
    team: Optional[int] = None
    expertise: list[str] = field(default_factory=list)
    capabilities: frozenset[str] = field(default_factory=frozenset)
    max_concurrent_tasks: int = 1
    sprint_capacity: Optional[int] = None
    model: str = "claude-sonnet-4-5"

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.id
        self.capabilities = frozenset(self.capabilities)

    def has_capability(self, capability: str) -> bool:
        return capability in self.capabilities

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["capabilities"] = sorted(self.capabilities)
        return data


@dataclass
class Workspace:
    """An agent's isolated, branch-backed checkout."""
    agent_id: str
    path: str
    branch: str
    exists: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TokenUsage:
    """Token counts reported by a single work-executor call."""
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0


@dataclass(frozen=True)
class UsageRecord:
    """
    One recorded executor call.

    Immutable and append-only. Cost is derived from the pricing table at
    read time so historical records can be re-priced.
    """
    timestamp: datetime
    model: str
    input_tokens: int
    output_tokens: int
    cached_tokens: int
    agent_id: str
    task_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat().replace("+00:00", "Z")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsageRecord:
        data = data.copy()
        data["timestamp"] = parse_iso(data["timestamp"])
        return cls(**data)


@dataclass
class CostBreakdown:
    """Cost of one usage record (USD)."""
    input_cost: float = 0.0
    cache_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float = 0.0
    tokens_saved: int = 0
    cost_saved: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# JSON encoder for custom types
class SwarmEncoder(json.JSONEncoder):
    """JSON encoder that handles Sprint Swarm model types."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.name
        if isinstance(obj, datetime):
            return obj.isoformat().replace("+00:00", "Z")
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def model_to_json(obj: Any, **kwargs: Any) -> str:
    """Serialize a model object (or list of them) to a JSON string."""
    return json.dumps(obj, cls=SwarmEncoder, **kwargs)
