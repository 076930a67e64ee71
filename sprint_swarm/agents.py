"""
Agent roster and runtime load tracking.

Profiles come from configuration and never change at runtime. The registry
keeps per-agent in-flight and completed work so the assigner can balance
load; it is rebuilt from the ledger on start-up because nothing here is
persisted.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from sprint_swarm.errors import AgentNotFoundError
from sprint_swarm.models import AgentProfile, Task, TaskStatus

if TYPE_CHECKING:
    from sprint_swarm.ledger import Ledger
    from sprint_swarm.logger import SwarmLogger


ARCHITECTURE_KEYWORDS = ("architecture", "design")

CapabilityPolicy = Callable[[Task], frozenset]


def requires_capability(task: Task) -> frozenset[str]:
    """
    Default capability policy.

    Tasks whose title mentions architecture or design need an agent with
    the architecture_design capability. Swap in another callable on the
    Assigner to change the rule.
    """
    title = task.title.lower()
    if any(keyword in title for keyword in ARCHITECTURE_KEYWORDS):
        return frozenset({"architecture_design"})
    return frozenset()


@dataclass
class AgentRuntimeState:
    """In-flight and completed work for one agent (task id -> story points)."""
    agent_id: str
    in_flight: dict[str, int] = field(default_factory=dict)
    completed: dict[str, int] = field(default_factory=dict)

    @property
    def load(self) -> int:
        return sum(self.in_flight.values())

    @property
    def completed_story_points(self) -> int:
        return sum(self.completed.values())


@dataclass
class AgentStatus:
    """Read-only snapshot of an agent for status queries."""
    id: str
    name: str
    role: str
    team: Optional[int]
    current_tasks: list[str]
    completed_tasks: list[str]
    current_load: int
    completed_story_points: int
    max_concurrent_tasks: int
    sprint_capacity: Optional[int] = None

    @property
    def available(self) -> bool:
        return len(self.current_tasks) < self.max_concurrent_tasks

    @property
    def remaining_sprint_capacity(self) -> Optional[int]:
        if self.sprint_capacity is None:
            return None
        return max(0, self.sprint_capacity - self.current_load - self.completed_story_points)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "team": self.team,
            "current_tasks": list(self.current_tasks),
            "completed_tasks": list(self.completed_tasks),
            "current_load": self.current_load,
            "completed_story_points": self.completed_story_points,
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "available": self.available,
            "remaining_sprint_capacity": self.remaining_sprint_capacity,
        }


class AgentRegistry:
    """
    Configured agents plus their runtime load.

    Roster order is preserved; it is the final tie-breaker when the
    assigner ranks candidates. Safe to use from worker threads.
    """

    def __init__(
        self,
        profiles: Iterable[AgentProfile],
        logger: Optional[SwarmLogger] = None,
    ) -> None:
        self._profiles: dict[str, AgentProfile] = {}
        for profile in profiles:
            self._profiles[profile.id] = profile
        self._states = {agent_id: AgentRuntimeState(agent_id) for agent_id in self._profiles}
        self._logger = logger
        self._lock = threading.RLock()

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level, component="agents")

    def _state(self, agent_id: str) -> AgentRuntimeState:
        state = self._states.get(agent_id)
        if state is None:
            raise AgentNotFoundError(agent_id)
        return state

    # Roster

    def get(self, agent_id: str) -> AgentProfile:
        profile = self._profiles.get(agent_id)
        if profile is None:
            raise AgentNotFoundError(agent_id)
        return profile

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)

    def profiles(self) -> list[AgentProfile]:
        return list(self._profiles.values())

    def by_team(self, team: int) -> list[AgentProfile]:
        """Agents serving a team. Agents without a team serve every team."""
        return [p for p in self._profiles.values() if p.team is None or p.team == team]

    # Runtime load

    def rebuild_from_ledger(self, ledger: Ledger) -> None:
        """Reconstruct load from the ledger's assigned_to fields."""
        with self._lock:
            self._states = {agent_id: AgentRuntimeState(agent_id) for agent_id in self._profiles}
            orphaned = []
            for task in ledger.list_tasks():
                if not task.assigned_to:
                    continue
                state = self._states.get(task.assigned_to)
                if state is None:
                    orphaned.append(task.id)
                    continue
                if task.status == TaskStatus.IN_PROGRESS:
                    state.in_flight[task.id] = task.story_points
                elif task.status == TaskStatus.COMPLETED:
                    state.completed[task.id] = task.story_points

            self._log("registry_rebuilt", {
                "in_flight": sum(len(s.in_flight) for s in self._states.values()),
                "completed": sum(len(s.completed) for s in self._states.values()),
            })
            if orphaned:
                self._log("registry_orphaned_tasks", {"task_ids": orphaned}, level="warn")

    def start_task(self, agent_id: str, task: Task) -> None:
        with self._lock:
            self._state(agent_id).in_flight[task.id] = task.story_points

    def finish_task(self, agent_id: str, task_id: str) -> None:
        """Move a task from in-flight to completed."""
        with self._lock:
            state = self._state(agent_id)
            points = state.in_flight.pop(task_id, None)
            if points is not None:
                state.completed[task_id] = points

    def release_task(self, agent_id: str, task_id: str) -> None:
        """Drop a task from in-flight without counting it as completed."""
        with self._lock:
            self._state(agent_id).in_flight.pop(task_id, None)

    def load(self, agent_id: str) -> int:
        """Sum of in-flight story points."""
        with self._lock:
            return self._state(agent_id).load

    def in_flight_count(self, agent_id: str) -> int:
        with self._lock:
            return len(self._state(agent_id).in_flight)

    def has_capacity(self, agent_id: str) -> bool:
        with self._lock:
            return self.in_flight_count(agent_id) < self.get(agent_id).max_concurrent_tasks

    def status(self, agent_id: str) -> AgentStatus:
        with self._lock:
            profile = self.get(agent_id)
            state = self._state(agent_id)
            return AgentStatus(
                id=profile.id,
                name=profile.name,
                role=profile.role,
                team=profile.team,
                current_tasks=list(state.in_flight),
                completed_tasks=list(state.completed),
                current_load=state.load,
                completed_story_points=state.completed_story_points,
                max_concurrent_tasks=profile.max_concurrent_tasks,
                sprint_capacity=profile.sprint_capacity,
            )

    def statuses(self, team: Optional[int] = None) -> list[AgentStatus]:
        profiles = self.profiles() if team is None else self.by_team(team)
        return [self.status(p.id) for p in profiles]
