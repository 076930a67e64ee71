"""
Task-to-agent assignment.

find_best_agent() ranks eligible agents by current load (lowest first) and
then by how many of their expertise keywords appear in the task text.
Returning None means nobody has capacity right now; callers retry on the
next cycle.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Optional

from sprint_swarm.agents import AgentRegistry, CapabilityPolicy, requires_capability
from sprint_swarm.errors import InvalidStateError
from sprint_swarm.models import AgentProfile, Task

if TYPE_CHECKING:
    from sprint_swarm.ledger import Ledger
    from sprint_swarm.logger import SwarmLogger


@dataclass
class AssignmentSummary:
    """Outcome of assigning a batch of tasks."""
    assigned: list[str] = field(default_factory=list)
    unassigned: list[str] = field(default_factory=list)
    assignments: dict[str, str] = field(default_factory=dict)  # task id -> agent id

    def to_dict(self) -> dict[str, Any]:
        return {
            "assigned": list(self.assigned),
            "unassigned": list(self.unassigned),
            "assignments": dict(self.assignments),
        }


def expertise_matches(agent: AgentProfile, task: Task) -> int:
    """Number of the agent's expertise keywords found in the task title or description."""
    text = f"{task.title} {task.description}".lower()
    return sum(1 for keyword in agent.expertise if keyword and keyword.lower() in text)


class Assigner:
    """Picks agents for tasks and records the assignment in ledger and registry."""

    def __init__(
        self,
        ledger: Ledger,
        registry: AgentRegistry,
        capability_policy: CapabilityPolicy = requires_capability,
        logger: Optional[SwarmLogger] = None,
    ) -> None:
        self._ledger = ledger
        self._registry = registry
        self._capability_policy = capability_policy
        self._logger = logger
        self._lock = threading.Lock()

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level, component="assigner")

    @property
    def capability_policy(self) -> CapabilityPolicy:
        return self._capability_policy

    def can_take_task(self, agent: AgentProfile, task: Task) -> bool:
        """Team match, spare concurrency and every required capability."""
        if agent.team is not None and agent.team != task.team:
            return False
        if not self._registry.has_capacity(agent.id):
            return False
        required = self._capability_policy(task)
        return all(agent.has_capability(capability) for capability in required)

    def find_best_agent(self, task: Task) -> Optional[AgentProfile]:
        """
        Best eligible agent for task, or None if no agent can take it now.

        Ordering: lower in-flight story points first, then more expertise
        matches. Full ties keep roster order.
        """
        candidates = [
            agent for agent in self._registry.by_team(task.team)
            if self.can_take_task(agent, task)
        ]
        if not candidates:
            return None

        # sorted() is stable, so roster order survives full ties
        candidates = sorted(
            candidates,
            key=lambda agent: (self._registry.load(agent.id), -expertise_matches(agent, task)),
        )
        return candidates[0]

    def assign_task(self, task: Task) -> Optional[AgentProfile]:
        """
        Assign a task to the best agent.

        Returns None when no agent has capacity.

        Raises:
            InvalidStateError: The ledger refused the transition.
        """
        with self._lock:
            agent = self.find_best_agent(task)
            if agent is None:
                self._log("no_capacity", {"task_id": task.id, "team": task.team}, level="debug")
                return None

            assigned = self._ledger.assign(task.id, agent.id)
            self._registry.start_task(agent.id, assigned)
            self._log("task_assigned", {
                "task_id": task.id,
                "agent_id": agent.id,
                "load": self._registry.load(agent.id),
            })
            return agent

    def assign_tasks(self, tasks: Iterable[Task]) -> AssignmentSummary:
        """Assign tasks largest first. Tasks the ledger refuses count as unassigned."""
        summary = AssignmentSummary()
        ordered = sorted(tasks, key=lambda t: t.story_points, reverse=True)

        for task in ordered:
            try:
                agent = self.assign_task(task)
            except InvalidStateError as e:
                self._log("assignment_rejected", {"task_id": task.id, "error": str(e)}, level="warn")
                agent = None

            if agent is None:
                summary.unassigned.append(task.id)
            else:
                summary.assigned.append(task.id)
                summary.assignments[task.id] = agent.id

        return summary

    def plan_tasks(self, tasks: Iterable[Task]) -> AssignmentSummary:
        """
        Dry-run assign_tasks against a scratch copy of the registry.

        Neither the ledger nor the live registry is touched.
        """
        scratch = AgentRegistry(self._registry.profiles())
        scratch.rebuild_from_ledger(self._ledger)
        planner = Assigner(self._ledger, scratch, self._capability_policy)

        summary = AssignmentSummary()
        for task in sorted(tasks, key=lambda t: t.story_points, reverse=True):
            agent = planner.find_best_agent(task)
            if agent is None:
                summary.unassigned.append(task.id)
                continue
            scratch.start_task(agent.id, task)
            summary.assigned.append(task.id)
            summary.assignments[task.id] = agent.id
        return summary
