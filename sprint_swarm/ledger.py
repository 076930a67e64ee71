"""
Task and epic ledger for Sprint Swarm.

This module handles:
- Creating tasks and epics with sequential ids (TASK-001, EPIC-001)
- Guarded lifecycle transitions (assign, complete, block, unblock)
- Epic membership, epic start/completion and derived progress
- Aggregated statistics computed on demand
- Saving the full snapshot to .swarm/state/{tasks,epics}.json after every mutation
- Graceful handling of missing or corrupted snapshot files
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Optional

from sprint_swarm.errors import (
    EpicNotFoundError,
    InvalidStateError,
    SwarmError,
    TaskNotFoundError,
)
from sprint_swarm.models import (
    Epic,
    EpicStatus,
    LedgerStatistics,
    StatusCounts,
    Task,
    TaskStatus,
    model_to_json,
    now_iso,
)
from sprint_swarm.utils.fs import (
    FileSystemError,
    ensure_dir,
    file_exists,
    read_file,
    safe_write,
)

if TYPE_CHECKING:
    from sprint_swarm.logger import SwarmLogger


TASKS_FILE = "tasks.json"
EPICS_FILE = "epics.json"


class LedgerError(SwarmError):
    """Raised when the ledger snapshot cannot be written."""
    pass


def _format_id(prefix: str, number: int) -> str:
    return f"{prefix}-{number:03d}"


def _numeric_suffix(identifier: str) -> int:
    _, _, suffix = identifier.rpartition("-")
    return int(suffix) if suffix.isdigit() else 0


def _dedupe(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


class Ledger:
    """
    Authoritative store of tasks and epics.

    Every public mutation validates the lifecycle guard, applies the change
    and persists the full snapshot before returning. Reads return detached
    copies, so the only way to change a task is through this class.
    """

    def __init__(
        self,
        state_dir: str | Path,
        logger: Optional[SwarmLogger] = None,
    ) -> None:
        """
        Initialize the ledger and load any existing snapshot.

        Args:
            state_dir: Directory holding tasks.json and epics.json.
            logger: Optional logger for recording operations.
        """
        self._state_dir = Path(state_dir)
        self._logger = logger
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._epics: dict[str, Epic] = {}
        self._next_task_number = 1
        self._next_epic_number = 1
        self._load()

    @property
    def tasks_path(self) -> Path:
        return self._state_dir / TASKS_FILE

    @property
    def epics_path(self) -> Path:
        return self._state_dir / EPICS_FILE

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level, component="ledger")

    # Persistence

    def _read_snapshot(self, path: Path, kind: str) -> list[dict[str, Any]]:
        if not file_exists(path):
            self._log(f"{kind}_load_miss", {"path": str(path)}, level="debug")
            return []

        try:
            data = json.loads(read_file(path))
            if not isinstance(data, list):
                raise ValueError(f"expected a JSON array, got {type(data).__name__}")
            return data
        except (json.JSONDecodeError, ValueError, FileSystemError) as e:
            self._log(f"{kind}_load_failed", {
                "path": str(path),
                "error": str(e),
            }, level="error")
            return []

    def _load(self) -> None:
        """Load both snapshots. A corrupt snapshot yields an empty collection."""
        tasks: dict[str, Task] = {}
        try:
            for entry in self._read_snapshot(self.tasks_path, "tasks"):
                task = Task.from_dict(entry)
                tasks[task.id] = task
        except (KeyError, ValueError, TypeError) as e:
            self._log("tasks_load_failed", {
                "path": str(self.tasks_path),
                "error": str(e),
            }, level="error")
            tasks = {}

        epics: dict[str, Epic] = {}
        try:
            for entry in self._read_snapshot(self.epics_path, "epics"):
                epic = Epic.from_dict(entry)
                epics[epic.id] = epic
        except (KeyError, ValueError, TypeError) as e:
            self._log("epics_load_failed", {
                "path": str(self.epics_path),
                "error": str(e),
            }, level="error")
            epics = {}

        self._tasks = tasks
        self._epics = epics
        self._next_task_number = max((_numeric_suffix(t) for t in tasks), default=0) + 1
        self._next_epic_number = max((_numeric_suffix(e) for e in epics), default=0) + 1

        if tasks or epics:
            self._log("ledger_loaded", {"tasks": len(tasks), "epics": len(epics)})

    def _write(self, path: Path, items: Iterable[Any]) -> None:
        ensure_dir(self._state_dir)
        try:
            safe_write(path, model_to_json([item.to_dict() for item in items], indent=2))
        except FileSystemError as e:
            self._log("ledger_save_error", {"path": str(path), "error": str(e)}, level="error")
            raise LedgerError(f"Failed to save {path.name}: {e}")

    def _save_tasks(self) -> None:
        self._write(self.tasks_path, self._tasks.values())

    def _save_epics(self) -> None:
        self._write(self.epics_path, self._epics.values())

    # Lookups

    def _require_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _require_epic(self, epic_id: str) -> Epic:
        epic = self._epics.get(epic_id)
        if epic is None:
            raise EpicNotFoundError(epic_id)
        return epic

    def get_task(self, task_id: str) -> Task:
        """Return a copy of the task. Raises TaskNotFoundError."""
        with self._lock:
            return self._require_task(task_id).copy()

    def get_epic(self, epic_id: str) -> Epic:
        """Return a copy of the epic. Raises EpicNotFoundError."""
        with self._lock:
            return self._require_epic(epic_id).copy()

    def has_task(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._tasks

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        team: Optional[int] = None,
        sprint: Optional[int] = None,
        assigned_to: Optional[str] = None,
    ) -> list[Task]:
        """List tasks matching every given filter, in creation order."""
        with self._lock:
            return [
                task.copy()
                for task in self._tasks.values()
                if (status is None or task.status == status)
                and (team is None or task.team == team)
                and (sprint is None or task.sprint == sprint)
                and (assigned_to is None or task.assigned_to == assigned_to)
            ]

    def list_epics(
        self,
        status: Optional[EpicStatus] = None,
        team: Optional[int] = None,
        sprint: Optional[int] = None,
    ) -> list[Epic]:
        """List epics matching every given filter, in creation order."""
        with self._lock:
            return [
                epic.copy()
                for epic in self._epics.values()
                if (status is None or epic.status == status)
                and (team is None or epic.team == team)
                and (sprint is None or epic.sprint == sprint)
            ]

    # Creation

    def _build_task(
        self,
        title: str,
        description: str = "",
        story_points: int = 1,
        dependencies: Optional[Iterable[str]] = None,
        team: int = 1,
        sprint: int = 1,
        epic_id: Optional[str] = None,
    ) -> Task:
        if not title or not title.strip():
            raise ValueError("Task title must not be empty")
        if isinstance(story_points, bool) or not isinstance(story_points, int) or story_points < 1:
            raise ValueError(f"story_points must be a positive integer, got {story_points!r}")
        if epic_id is not None:
            self._require_epic(epic_id)

        task = Task(
            id=_format_id("TASK", self._next_task_number),
            title=title.strip(),
            description=description,
            story_points=story_points,
            dependencies=_dedupe(dependencies or []),
            team=team,
            sprint=sprint,
        )
        self._next_task_number += 1
        self._tasks[task.id] = task

        if epic_id is not None:
            self._attach(self._epics[epic_id], task)
        return task

    def create_task(
        self,
        title: str,
        description: str = "",
        story_points: int = 1,
        dependencies: Optional[Iterable[str]] = None,
        team: int = 1,
        sprint: int = 1,
        epic_id: Optional[str] = None,
    ) -> Task:
        """
        Create a PENDING task with the next sequential id.

        Raises:
            ValueError: Empty title or non-positive story points.
            EpicNotFoundError: epic_id given but unknown.
        """
        with self._lock:
            task = self._build_task(
                title, description, story_points, dependencies, team, sprint, epic_id
            )
            self._save_tasks()
            if epic_id is not None:
                self._save_epics()
            self._log("task_created", {
                "task_id": task.id,
                "title": task.title,
                "story_points": task.story_points,
                "dependencies": task.dependencies,
            })
            return task.copy()

    def import_tasks(self, entries: Iterable[dict[str, Any]]) -> list[Task]:
        """
        Create several tasks from keyword dicts and persist once.

        A bad entry leaves the ledger unchanged.
        """
        entries = list(entries)
        with self._lock:
            next_number = self._next_task_number
            epic_members = {eid: list(e.task_ids) for eid, e in self._epics.items()}
            created: list[Task] = []
            try:
                for entry in entries:
                    created.append(self._build_task(**entry))
            except (ValueError, TypeError, EpicNotFoundError):
                for task in created:
                    del self._tasks[task.id]
                for eid, members in epic_members.items():
                    self._epics[eid].task_ids = members
                self._next_task_number = next_number
                raise

            self._save_tasks()
            if any(entry.get("epic_id") for entry in entries):
                self._save_epics()
            self._log("tasks_imported", {"count": len(created)})
            return [task.copy() for task in created]

    def create_epic(
        self,
        title: str,
        description: str = "",
        estimated_story_points: int = 0,
        team: int = 1,
        sprint: int = 1,
    ) -> Epic:
        """Create a PENDING epic with the next sequential id."""
        if not title or not title.strip():
            raise ValueError("Epic title must not be empty")
        if estimated_story_points < 0:
            raise ValueError("estimated_story_points must not be negative")

        with self._lock:
            epic = Epic(
                id=_format_id("EPIC", self._next_epic_number),
                title=title.strip(),
                description=description,
                estimated_story_points=estimated_story_points,
                team=team,
                sprint=sprint,
            )
            self._next_epic_number += 1
            self._epics[epic.id] = epic
            self._save_epics()
            self._log("epic_created", {"epic_id": epic.id, "title": epic.title})
            return epic.copy()

    # Task lifecycle

    def assign(self, task_id: str, agent_id: str) -> Task:
        """
        Move a PENDING task to IN_PROGRESS for agent_id.

        Raises:
            InvalidStateError: Task not PENDING, or a dependency known to the
                ledger is not COMPLETED.
        """
        with self._lock:
            task = self._require_task(task_id)
            if task.status != TaskStatus.PENDING:
                raise InvalidStateError(
                    f"Cannot assign {task_id}: status is {task.status.name}, expected PENDING",
                    entity_id=task_id,
                    current_status=task.status.name,
                )
            unmet = [
                dep for dep in task.dependencies
                if dep in self._tasks and self._tasks[dep].status != TaskStatus.COMPLETED
            ]
            if unmet:
                raise InvalidStateError(
                    f"Cannot assign {task_id}: dependencies not completed: {', '.join(unmet)}",
                    entity_id=task_id,
                    current_status=task.status.name,
                )

            task.status = TaskStatus.IN_PROGRESS
            task.assigned_to = agent_id
            task.started_at = now_iso()

            epic_changed = False
            if task.epic_id and task.epic_id in self._epics:
                epic = self._epics[task.epic_id]
                if epic.status == EpicStatus.PENDING:
                    epic.status = EpicStatus.IN_PROGRESS
                    epic.started_at = task.started_at
                    epic_changed = True

            self._save_tasks()
            if epic_changed:
                self._save_epics()
                self._log("epic_started", {"epic_id": task.epic_id, "trigger": task_id})
            self._log("task_assigned", {"task_id": task_id, "agent_id": agent_id})
            return task.copy()

    def complete(self, task_id: str) -> Task:
        """
        Move an IN_PROGRESS task to COMPLETED.

        If it was the last open task of its epic, the epic completes too.

        Raises:
            InvalidStateError: Task not IN_PROGRESS.
        """
        with self._lock:
            task = self._require_task(task_id)
            if task.status != TaskStatus.IN_PROGRESS:
                raise InvalidStateError(
                    f"Cannot complete {task_id}: status is {task.status.name}, expected IN_PROGRESS",
                    entity_id=task_id,
                    current_status=task.status.name,
                )

            task.status = TaskStatus.COMPLETED
            task.completed_at = now_iso()
            self._save_tasks()
            self._log("task_completed", {"task_id": task_id, "agent_id": task.assigned_to})

            if task.epic_id and task.epic_id in self._epics:
                self._maybe_complete_epic(self._epics[task.epic_id])
            return task.copy()

    def block(self, task_id: str, reason: str) -> Task:
        """
        Block a PENDING, IN_PROGRESS or already BLOCKED task.

        Raises:
            ValueError: Empty reason.
            InvalidStateError: Task is COMPLETED.
        """
        if not reason or not reason.strip():
            raise ValueError("A reason is required to block a task")

        with self._lock:
            task = self._require_task(task_id)
            if task.status == TaskStatus.COMPLETED:
                raise InvalidStateError(
                    f"Cannot block {task_id}: task is already COMPLETED",
                    entity_id=task_id,
                    current_status=task.status.name,
                )

            previous = task.status
            task.status = TaskStatus.BLOCKED
            task.blocked_reason = reason.strip()
            self._save_tasks()
            self._log("task_blocked", {
                "task_id": task_id,
                "previous_status": previous.name,
                "reason": task.blocked_reason,
            }, level="warn")
            return task.copy()

    def unblock(self, task_id: str) -> Task:
        """
        Return a BLOCKED task to PENDING, clearing assignment and timestamps.

        Raises:
            InvalidStateError: Task not BLOCKED.
        """
        with self._lock:
            task = self._require_task(task_id)
            if task.status != TaskStatus.BLOCKED:
                raise InvalidStateError(
                    f"Cannot unblock {task_id}: status is {task.status.name}, expected BLOCKED",
                    entity_id=task_id,
                    current_status=task.status.name,
                )

            task.status = TaskStatus.PENDING
            task.assigned_to = None
            task.started_at = None
            task.completed_at = None
            task.blocked_reason = None
            self._save_tasks()
            self._log("task_unblocked", {"task_id": task_id})
            return task.copy()

    def delete_task(self, task_id: str) -> bool:
        """Remove a task and its epic membership. Returns False if unknown."""
        with self._lock:
            task = self._tasks.pop(task_id, None)
            if task is None:
                return False

            epics_changed = False
            for epic in self._epics.values():
                if task_id in epic.task_ids:
                    epic.task_ids.remove(task_id)
                    epics_changed = True

            self._save_tasks()
            if epics_changed:
                self._save_epics()
            self._log("task_deleted", {"task_id": task_id})
            return True

    # Epics

    def _attach(self, epic: Epic, task: Task) -> bool:
        """
        Link task to epic. Returns True if anything changed.

        Membership is append-only, so a task already in another epic is
        refused rather than moved.
        """
        if task.epic_id and task.epic_id != epic.id and task.epic_id in self._epics:
            raise InvalidStateError(
                f"Task {task.id} already belongs to {task.epic_id}",
                entity_id=task.id,
            )
        changed = False
        if task.id not in epic.task_ids:
            epic.task_ids.append(task.id)
            changed = True
        if task.epic_id != epic.id:
            task.epic_id = epic.id
            changed = True
        return changed

    def add_task_to_epic(self, epic_id: str, task_id: str) -> Epic:
        """
        Add a task to an epic. Adding the same task twice is a no-op.

        Raises:
            InvalidStateError: The task already belongs to another epic.
        """
        with self._lock:
            epic = self._require_epic(epic_id)
            task = self._require_task(task_id)
            if self._attach(epic, task):
                self._save_tasks()
                self._save_epics()
                self._log("epic_task_added", {"epic_id": epic_id, "task_id": task_id})
            return epic.copy()

    def start_epic(self, epic_id: str) -> Epic:
        """PENDING -> IN_PROGRESS. Raises InvalidStateError otherwise."""
        with self._lock:
            epic = self._require_epic(epic_id)
            if epic.status != EpicStatus.PENDING:
                raise InvalidStateError(
                    f"Cannot start {epic_id}: status is {epic.status.name}, expected PENDING",
                    entity_id=epic_id,
                    current_status=epic.status.name,
                )
            epic.status = EpicStatus.IN_PROGRESS
            epic.started_at = now_iso()
            self._save_epics()
            self._log("epic_started", {"epic_id": epic_id})
            return epic.copy()

    def complete_epic(self, epic_id: str) -> Epic:
        """IN_PROGRESS -> COMPLETED. Raises InvalidStateError otherwise."""
        with self._lock:
            epic = self._require_epic(epic_id)
            if epic.status != EpicStatus.IN_PROGRESS:
                raise InvalidStateError(
                    f"Cannot complete {epic_id}: status is {epic.status.name}, expected IN_PROGRESS",
                    entity_id=epic_id,
                    current_status=epic.status.name,
                )
            epic.status = EpicStatus.COMPLETED
            epic.completed_at = now_iso()
            self._save_epics()
            self._log("epic_completed", {"epic_id": epic_id})
            return epic.copy()

    def _maybe_complete_epic(self, epic: Epic) -> None:
        if epic.status == EpicStatus.COMPLETED:
            return
        children = [self._tasks[tid] for tid in epic.task_ids if tid in self._tasks]
        if not children or any(t.status != TaskStatus.COMPLETED for t in children):
            return
        now = now_iso()
        if epic.started_at is None:
            epic.started_at = now
        epic.status = EpicStatus.COMPLETED
        epic.completed_at = now
        self._save_epics()
        self._log("epic_completed", {"epic_id": epic.id, "automatic": True})

    def epic_progress(self, epic_id: str) -> StatusCounts:
        """Counts and story points of the epic's child tasks."""
        with self._lock:
            epic = self._require_epic(epic_id)
            counts = StatusCounts()
            for task_id in epic.task_ids:
                task = self._tasks.get(task_id)
                if task is not None:
                    counts.add(task)
            return counts

    # Statistics

    def get_statistics(self) -> LedgerStatistics:
        """Aggregate counts by status, team and sprint."""
        with self._lock:
            stats = LedgerStatistics()
            for task in self._tasks.values():
                stats.overall.add(task)
                stats.by_team.setdefault(task.team, StatusCounts()).add(task)
                stats.by_sprint.setdefault(task.sprint, StatusCounts()).add(task)
            return stats
