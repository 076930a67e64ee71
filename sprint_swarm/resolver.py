"""
Dependency resolution for Sprint Swarm.

Pure functions over a snapshot of tasks:
- resolve(): split tasks into ready / blocked and report dependency cycles
- check_cycles(): raise CyclicDependencyError when the graph has a cycle

A dependency id that is not present in the task set counts as satisfied,
so tasks can reference work from a previous sprint's discarded list.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from sprint_swarm.errors import CyclicDependencyError
from sprint_swarm.models import Task, TaskStatus


@dataclass
class Resolution:
    """Result of resolving a task set. Blocked is for reporting only."""
    ready: list[Task] = field(default_factory=list)
    blocked: list[Task] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)

    @property
    def ready_ids(self) -> list[str]:
        return [t.id for t in self.ready]

    @property
    def blocked_ids(self) -> list[str]:
        return [t.id for t in self.blocked]

    @property
    def cyclic_ids(self) -> set[str]:
        return {task_id for cycle in self.cycles for task_id in cycle}

    def to_dict(self) -> dict[str, Any]:
        return {
            "ready": self.ready_ids,
            "blocked": self.blocked_ids,
            "cycles": self.cycles,
        }


def find_cycles(tasks: Iterable[Task]) -> list[list[str]]:
    """
    Find dependency cycles with a depth-first search over a recursion stack.

    Only edges between tasks in the set are followed. Each cycle is the
    ordered list of ids along the cycle, starting from the first one reached.
    The walk is iterative so long dependency chains cannot exhaust the
    interpreter stack.
    """
    by_id = {task.id: task for task in tasks}
    visited: set[str] = set()
    on_stack: set[str] = set()
    cycles: list[list[str]] = []

    for root in by_id:
        if root in visited:
            continue

        path: list[str] = [root]
        iterators = [iter(by_id[root].dependencies)]
        visited.add(root)
        on_stack.add(root)

        while iterators:
            dep = next(iterators[-1], None)
            if dep is None:
                iterators.pop()
                on_stack.discard(path.pop())
                continue
            if dep not in by_id:
                continue
            if dep in on_stack:
                cycles.append(path[path.index(dep):])
                continue
            if dep in visited:
                continue
            visited.add(dep)
            on_stack.add(dep)
            path.append(dep)
            iterators.append(iter(by_id[dep].dependencies))

    return cycles


def resolve(tasks: Iterable[Task]) -> Resolution:
    """
    Split tasks into ready and blocked, and report cycles.

    Ready: PENDING, not on a cycle, and every dependency either absent from
    the set or COMPLETED. Blocked: PENDING with at least one dependency that
    is present and not COMPLETED (cycle members and their dependents land
    here). Input order is preserved in both lists.
    """
    tasks = list(tasks)
    by_id = {task.id: task for task in tasks}
    cycles = find_cycles(tasks)
    cyclic = {task_id for cycle in cycles for task_id in cycle}

    resolution = Resolution(cycles=cycles)
    for task in tasks:
        if task.status != TaskStatus.PENDING:
            continue
        unmet = [
            dep for dep in task.dependencies
            if dep in by_id and (by_id[dep].status != TaskStatus.COMPLETED or dep in cyclic)
        ]
        if unmet:
            resolution.blocked.append(task)
        elif task.id not in cyclic:
            resolution.ready.append(task)

    return resolution


def check_cycles(tasks: Iterable[Task]) -> None:
    """Raise CyclicDependencyError if the dependency graph has any cycle."""
    cycles = find_cycles(tasks)
    if cycles:
        raise CyclicDependencyError(cycles)
