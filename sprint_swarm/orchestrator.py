"""
Sprint orchestration for Sprint Swarm.

This module wires the components together and runs the work loop:
1. Task administration (create / delete / block / unblock)
2. Task execution for one agent:
   - Assign the task if it is still pending
   - Ensure the agent worktree and tag a "before" checkpoint
   - Run the work executor and record its token usage
   - On failure roll the worktree back; the task stays IN_PROGRESS
   - On success commit and merge to trunk; a refused merge is a failure
   - Once merged, complete, checkpoint "after", push
3. Sprint runs: resolve dependencies, assign ready tasks, execute them on a
   thread pool with at most one task per agent at a time
4. Read-only status and cost queries for the CLI

A spending limit opens a breaker: tasks already running finish, nothing new
is dispatched until reset_breaker() is called.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Optional

from sprint_swarm.agents import AgentRegistry, AgentStatus
from sprint_swarm.assigner import Assigner, AssignmentSummary
from sprint_swarm.costs import CostAccountant, CostSummary
from sprint_swarm.errors import (
    GitCommandError,
    InvalidStateError,
    SpendingLimitExceededError,
    SwarmError,
    WorkspaceError,
)
from sprint_swarm.executor import AgentContext, ClaudeCliExecutor, ExecutionResult, WorkExecutor
from sprint_swarm.ledger import Ledger
from sprint_swarm.merge import MergeCoordinator, MergeResult, Reviewer
from sprint_swarm.models import (
    Epic,
    LedgerStatistics,
    StatusCounts,
    Task,
    TaskStatus,
)
from sprint_swarm.resolver import Resolution, resolve
from sprint_swarm.suite_runner import SuiteRunner
from sprint_swarm.workspace import WorkspaceManager

if TYPE_CHECKING:
    from sprint_swarm.config import SwarmConfig
    from sprint_swarm.logger import SwarmLogger


class ExecutionStatus(Enum):
    COMPLETED = auto()
    FAILED = auto()
    UNASSIGNED = auto()       # No agent had capacity
    SPENDING_LIMIT = auto()   # Limit reached; breaker is now open
    SKIPPED = auto()          # Breaker was already open


@dataclass
class TaskExecution:
    """What happened when one task was executed."""
    task_id: str
    status: ExecutionStatus
    agent_id: Optional[str] = None
    output: str = ""
    error: Optional[str] = None
    cost: float = 0.0
    commit: Optional[str] = None
    checkpoint: Optional[str] = None
    rolled_back: bool = False
    merge: Optional[MergeResult] = None

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.name,
            "agent_id": self.agent_id,
            "error": self.error,
            "cost": round(self.cost, 6),
            "commit": self.commit,
            "checkpoint": self.checkpoint,
            "rolled_back": self.rolled_back,
            "merge": self.merge.to_dict() if self.merge else None,
        }


@dataclass
class SprintReport:
    """Outcome of one sprint pass (or a dry run of one)."""
    sprint: Optional[int]
    ready: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)
    assigned: dict[str, str] = field(default_factory=dict)   # task id -> agent id
    unassigned: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    merges: list[MergeResult] = field(default_factory=list)
    executions: list[TaskExecution] = field(default_factory=list)
    spending_limit_hit: bool = False
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "sprint": self.sprint,
            "ready": list(self.ready),
            "blocked": list(self.blocked),
            "cycles": [list(c) for c in self.cycles],
            "assigned": dict(self.assigned),
            "unassigned": list(self.unassigned),
            "completed": list(self.completed),
            "failed": list(self.failed),
            "merges": [m.to_dict() for m in self.merges],
            "spending_limit_hit": self.spending_limit_hit,
            "dry_run": self.dry_run,
        }


@dataclass
class TeamStatus:
    team: int
    counts: StatusCounts
    agents: list[AgentStatus]
    tasks: list[Task]

    def to_dict(self) -> dict[str, Any]:
        return {
            "team": self.team,
            "counts": self.counts.to_dict(),
            "agents": [a.to_dict() for a in self.agents],
            "tasks": [t.to_dict() for t in self.tasks],
        }


@dataclass
class OverallStatus:
    statistics: LedgerStatistics
    agents: list[AgentStatus]
    epics: list[Epic]
    total_cost: float
    breaker_open: bool
    breaker_reason: Optional[str]
    merges_halted: bool
    halt_reason: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "statistics": self.statistics.to_dict(),
            "agents": [a.to_dict() for a in self.agents],
            "epics": [e.to_dict() for e in self.epics],
            "total_cost": round(self.total_cost, 6),
            "breaker_open": self.breaker_open,
            "breaker_reason": self.breaker_reason,
            "merges_halted": self.merges_halted,
            "halt_reason": self.halt_reason,
        }


class Orchestrator:
    """
    Composition root for Sprint Swarm.

    Owns one of each component and runs the execute/merge loop. Every
    collaborator can be injected, which is how tests substitute the work
    executor; from_config() builds the production wiring.
    """

    def __init__(
        self,
        config: SwarmConfig,
        ledger: Ledger,
        registry: AgentRegistry,
        assigner: Assigner,
        workspaces: WorkspaceManager,
        merger: MergeCoordinator,
        costs: CostAccountant,
        executor: WorkExecutor,
        logger: Optional[SwarmLogger] = None,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.registry = registry
        self.assigner = assigner
        self.workspaces = workspaces
        self.merger = merger
        self.costs = costs
        self.executor = executor
        self.logger = logger

        self._breaker_lock = threading.Lock()
        self._breaker_reason: Optional[str] = None
        self._workspaces_ready = False

        self.costs.on_alert(self._on_spending_alert)

    @classmethod
    def from_config(
        cls,
        config: SwarmConfig,
        executor: Optional[WorkExecutor] = None,
        reviewer: Optional[Reviewer] = None,
        logger: Optional[SwarmLogger] = None,
    ) -> Orchestrator:
        """Build the production wiring from configuration."""
        ledger = Ledger(config.state_path, logger=logger)
        registry = AgentRegistry(config.agents, logger=logger)
        registry.rebuild_from_ledger(ledger)
        workspaces = WorkspaceManager.from_config(config, logger=logger)
        merger = MergeCoordinator(
            workspaces,
            policy=config.merge,
            suite_runner=SuiteRunner(config.merge.test_timeout_seconds),
            reviewer=reviewer,
            logger=logger,
        )
        costs = CostAccountant(
            config.state_path,
            limits=config.costs.limits if config.costs.enabled else None,
            logger=logger,
        )
        return cls(
            config=config,
            ledger=ledger,
            registry=registry,
            assigner=Assigner(ledger, registry, logger=logger),
            workspaces=workspaces,
            merger=merger,
            costs=costs,
            executor=executor or ClaudeCliExecutor.from_config(config, logger=logger),
            logger=logger,
        )

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self.logger:
            self.logger.log(event_type, data, level=level, component="orchestrator")

    # =========================================================================
    # Breaker
    # =========================================================================

    @property
    def breaker_open(self) -> bool:
        return self._breaker_reason is not None

    @property
    def breaker_reason(self) -> Optional[str]:
        return self._breaker_reason

    def _open_breaker(self, reason: str) -> None:
        with self._breaker_lock:
            if self._breaker_reason is None:
                self._breaker_reason = reason
                self._log("breaker_opened", {"reason": reason}, level="error")

    def reset_breaker(self) -> None:
        """Allow dispatch again after a spending limit was hit."""
        with self._breaker_lock:
            self._log("breaker_reset", {"previous_reason": self._breaker_reason}, level="warn")
            self._breaker_reason = None

    def _on_spending_alert(self, message: str, current: float, threshold: float) -> None:
        self._log("spending_alert", {
            "message": message,
            "current": round(current, 4),
            "threshold": threshold,
        }, level="warn")

    # =========================================================================
    # Task administration
    # =========================================================================

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
        return self.ledger.create_task(
            title,
            description=description,
            story_points=story_points,
            dependencies=dependencies,
            team=team,
            sprint=sprint,
            epic_id=epic_id,
        )

    def create_epic(
        self,
        title: str,
        description: str = "",
        estimated_story_points: int = 0,
        team: int = 1,
        sprint: int = 1,
    ) -> Epic:
        return self.ledger.create_epic(
            title,
            description=description,
            estimated_story_points=estimated_story_points,
            team=team,
            sprint=sprint,
        )

    def _release(self, task: Task) -> None:
        if task.assigned_to and task.assigned_to in self.registry:
            self.registry.release_task(task.assigned_to, task.id)

    def delete_task(self, task_id: str) -> bool:
        """Delete a task; an in-flight assignment is released first."""
        if not self.ledger.has_task(task_id):
            return False
        self._release(self.ledger.get_task(task_id))
        return self.ledger.delete_task(task_id)

    def block_task(self, task_id: str, reason: str) -> Task:
        before = self.ledger.get_task(task_id)
        task = self.ledger.block(task_id, reason)
        self._release(before)
        return task

    def unblock_task(self, task_id: str) -> Task:
        return self.ledger.unblock(task_id)

    # =========================================================================
    # Assignment
    # =========================================================================

    def assign_task(self, task_id: str) -> Optional[str]:
        """
        Assign one task to the best available agent.

        Returns:
            The agent id, or None when no agent has capacity.

        Raises:
            TaskNotFoundError: Unknown task.
            InvalidStateError: Task is not PENDING or has unmet dependencies.
        """
        agent = self.assigner.assign_task(self.ledger.get_task(task_id))
        return agent.id if agent else None

    def auto_assign_tasks(self, sprint: Optional[int] = None) -> AssignmentSummary:
        """Assign every ready task (optionally of one sprint) without executing."""
        resolution = self._resolve(sprint)
        summary = self.assigner.assign_tasks(resolution.ready)
        self._log("auto_assign_complete", {"sprint": sprint, **summary.to_dict()})
        return summary

    def _resolve(self, sprint: Optional[int]) -> Resolution:
        # Dependencies may cross sprints, so resolve over the whole ledger
        resolution = resolve(self.ledger.list_tasks())
        if sprint is not None:
            resolution.ready = [t for t in resolution.ready if t.sprint == sprint]
            resolution.blocked = [t for t in resolution.blocked if t.sprint == sprint]
        return resolution

    # =========================================================================
    # Execution
    # =========================================================================

    def prepare_workspaces(self) -> None:
        """Reconstruct the worktree map from git once per process."""
        if self._workspaces_ready or not self.config.git.enabled:
            return
        self.workspaces.initialize()
        self._workspaces_ready = True

    def _workspace_for(self, agent_id: str) -> Path:
        if not self.config.git.enabled:
            return Path(self.config.repo_root)
        self.prepare_workspaces()
        return self.workspaces.ensure(agent_id)

    def execute_task(self, task_id: str) -> TaskExecution:
        """
        Run one task end to end for its agent.

        Raises:
            TaskNotFoundError: Unknown task.
            InvalidStateError: Task is COMPLETED or BLOCKED.
        """
        if self.breaker_open:
            return TaskExecution(
                task_id=task_id,
                status=ExecutionStatus.SKIPPED,
                error=f"Dispatch stopped: {self._breaker_reason}",
            )

        task = self.ledger.get_task(task_id)
        if task.status == TaskStatus.PENDING:
            if self.assigner.assign_task(task) is None:
                return TaskExecution(
                    task_id=task_id,
                    status=ExecutionStatus.UNASSIGNED,
                    error="No agent has capacity for this task",
                )
            task = self.ledger.get_task(task_id)
        elif task.status != TaskStatus.IN_PROGRESS:
            raise InvalidStateError(
                f"Cannot execute task {task_id} in status {task.status.name}",
                entity_id=task_id,
                current_status=task.status.name,
            )

        agent = self.registry.get(task.assigned_to)
        self.registry.start_task(agent.id, task)
        execution = TaskExecution(task_id=task_id, status=ExecutionStatus.FAILED, agent_id=agent.id)
        self._log("task_execution_started", {"task_id": task_id, "agent_id": agent.id})

        try:
            self.costs.check_limits(agent_id=agent.id, task_id=task_id)
        except SpendingLimitExceededError as e:
            self._open_breaker(str(e))
            execution.status = ExecutionStatus.SPENDING_LIMIT
            execution.error = str(e)
            return execution

        try:
            path = self._workspace_for(agent.id)
            rollback_ref = self._checkpoint_before(agent.id, task_id, execution)
        except (WorkspaceError, GitCommandError) as e:
            execution.error = f"Workspace preparation failed: {e}"
            self._log("task_execution_failed", {"task_id": task_id, "error": execution.error}, level="error")
            return execution

        result = self._run_executor(task, AgentContext(agent=agent, workspace_path=path))
        execution.output = result.output

        if result.usage is not None:
            try:
                breakdown = self.costs.record(
                    model=result.usage.model,
                    input_tokens=result.usage.input_tokens,
                    output_tokens=result.usage.output_tokens,
                    cached_tokens=result.usage.cached_tokens,
                    agent_id=agent.id,
                    task_id=task_id,
                )
                execution.cost = breakdown.total_cost
            except SpendingLimitExceededError as e:
                self._open_breaker(str(e))
                execution.status = ExecutionStatus.SPENDING_LIMIT
                execution.error = str(e)
                # The work was paid for but is not kept; the task stays retryable
                self._roll_back(agent.id, rollback_ref, execution)
                return execution

        if not result.success:
            execution.error = result.error or "Executor reported failure"
            self._roll_back(agent.id, rollback_ref, execution)
            self._log("task_execution_failed", {
                "task_id": task_id,
                "agent_id": agent.id,
                "error": execution.error,
                "rolled_back": execution.rolled_back,
            }, level="warn")
            return execution

        try:
            merged = self._commit_and_merge(task, agent.id, execution)
        except (WorkspaceError, GitCommandError) as e:
            execution.error = f"Commit failed: {e}"
            self._roll_back(agent.id, rollback_ref, execution)
            self._log("task_execution_failed", {"task_id": task_id, "error": execution.error}, level="error")
            return execution

        if not merged:
            # Trunk never took the work; drop it from the branch so later merges start clean
            execution.error = f"Merge {execution.merge.outcome.name}: {execution.merge.message}"
            self._roll_back(agent.id, rollback_ref, execution)
            self._log("task_merge_rejected", {
                "task_id": task_id,
                "agent_id": agent.id,
                "outcome": execution.merge.outcome.name,
                "rolled_back": execution.rolled_back,
            }, level="warn")
            return execution

        self._complete(task, agent.id, execution)

        execution.status = ExecutionStatus.COMPLETED
        self._log("task_execution_completed", {
            "task_id": task_id,
            "agent_id": agent.id,
            "commit": execution.commit,
            "cost": round(execution.cost, 6),
            "merge": execution.merge.outcome.name if execution.merge else None,
        })
        return execution

    def _run_executor(self, task: Task, context: AgentContext) -> ExecutionResult:
        try:
            return self.executor.execute(task, context)
        except Exception as e:
            # Executors are pluggable; a crash must not leave the worker thread dead
            self._log("executor_crashed", {"task_id": task.id, "error": str(e)}, level="error")
            return ExecutionResult(success=False, error=f"Executor raised: {e}")

    def _checkpoint_before(self, agent_id: str, task_id: str, execution: TaskExecution) -> Optional[str]:
        """Tag the workspace before work starts; returns the ref to roll back to."""
        if not self.config.git.enabled:
            return None
        if self.config.git.checkpoints:
            execution.checkpoint = self.workspaces.create_checkpoint(agent_id, task_id, "before")
            return execution.checkpoint
        return self.workspaces.git.rev_parse("HEAD", cwd=self.workspaces.get_path(agent_id))

    def _roll_back(self, agent_id: str, ref: Optional[str], execution: TaskExecution) -> None:
        if ref is None:
            return
        try:
            self.workspaces.rollback(agent_id, ref)
            execution.rolled_back = True
        except (WorkspaceError, GitCommandError) as e:
            self._log("workspace_rollback_failed", {"agent_id": agent_id, "ref": ref, "error": str(e)}, level="error")

    def _commit_and_merge(self, task: Task, agent_id: str, execution: TaskExecution) -> bool:
        """Commit the work and merge it into trunk. False if the merge was refused."""
        git = self.config.git
        if not git.enabled:
            return True
        if git.auto_commit:
            execution.commit = self.workspaces.commit(agent_id, task.id, task.title)

        if self.config.merge.enabled and (execution.commit or not git.auto_commit):
            execution.merge = self.merger.merge(agent_id, task.id)
            return execution.merge.success
        return True

    def _complete(self, task: Task, agent_id: str, execution: TaskExecution) -> None:
        self.ledger.complete(task.id)
        self.registry.finish_task(agent_id, task.id)

        git = self.config.git
        if not git.enabled:
            return
        try:
            if git.checkpoints:
                execution.checkpoint = self.workspaces.create_checkpoint(agent_id, task.id, "after")
            if git.push:
                self.workspaces.push(agent_id)
        except (WorkspaceError, GitCommandError) as e:
            self._log("post_completion_step_failed", {"task_id": task.id, "error": str(e)}, level="warn")

    # =========================================================================
    # Sprints
    # =========================================================================

    def run_sprint(self, sprint: Optional[int] = None) -> SprintReport:
        """
        Resolve, assign and execute one pass over the sprint's ready tasks.

        Tasks unlocked by work completed during the pass are picked up by
        the next call.
        """
        resolution = self._resolve(sprint)
        report = SprintReport(
            sprint=sprint,
            ready=resolution.ready_ids,
            blocked=resolution.blocked_ids,
            cycles=resolution.cycles,
        )
        if resolution.cycles:
            self._log("dependency_cycles", {"cycles": resolution.cycles}, level="warn")

        if self.breaker_open:
            report.spending_limit_hit = True
            report.unassigned = resolution.ready_ids
            self._log("sprint_skipped", {"sprint": sprint, "reason": self._breaker_reason}, level="warn")
            return report

        summary = self.assigner.assign_tasks(resolution.ready)
        report.assigned = dict(summary.assignments)
        report.unassigned = list(summary.unassigned)

        self._log("sprint_started", {
            "sprint": sprint,
            "ready": len(report.ready),
            "blocked": len(report.blocked),
            "assigned": len(report.assigned),
        })

        if self.config.scheduler.auto_execute and report.assigned:
            for execution in self._dispatch(summary):
                report.executions.append(execution)
                if execution.merge is not None:
                    report.merges.append(execution.merge)
                if execution.status == ExecutionStatus.COMPLETED:
                    report.completed.append(execution.task_id)
                elif execution.status in (ExecutionStatus.FAILED, ExecutionStatus.SPENDING_LIMIT):
                    report.failed.append(execution.task_id)

        report.spending_limit_hit = self.breaker_open
        self._log("sprint_finished", {
            "sprint": sprint,
            "completed": len(report.completed),
            "failed": len(report.failed),
            "spending_limit_hit": report.spending_limit_hit,
        })
        return report

    def _dispatch(self, summary: AssignmentSummary) -> list[TaskExecution]:
        """Execute assigned tasks; each agent works through its own queue serially."""
        queues: dict[str, list[str]] = {}
        for task_id in summary.assigned:
            queues.setdefault(summary.assignments[task_id], []).append(task_id)

        if self.config.git.enabled:
            self.prepare_workspaces()

        executions: list[TaskExecution] = []
        workers = max(1, min(self.config.scheduler.max_parallel, len(queues)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sprint-swarm") as pool:
            futures = [
                pool.submit(self._run_agent_queue, agent_id, task_ids)
                for agent_id, task_ids in queues.items()
            ]
            for future in as_completed(futures):
                executions.extend(future.result())
        return executions

    def _run_agent_queue(self, agent_id: str, task_ids: list[str]) -> list[TaskExecution]:
        results = []
        for task_id in task_ids:
            try:
                results.append(self.execute_task(task_id))
            except SwarmError as e:
                self._log("task_dispatch_failed", {"task_id": task_id, "agent_id": agent_id, "error": str(e)}, level="error")
                results.append(TaskExecution(
                    task_id=task_id,
                    status=ExecutionStatus.FAILED,
                    agent_id=agent_id,
                    error=str(e),
                ))
        return results

    def simulate(self, sprint: Optional[int] = None) -> SprintReport:
        """Report what run_sprint would assign, changing nothing."""
        resolution = self._resolve(sprint)
        plan = self.assigner.plan_tasks(resolution.ready)
        return SprintReport(
            sprint=sprint,
            ready=resolution.ready_ids,
            blocked=resolution.blocked_ids,
            cycles=resolution.cycles,
            assigned=dict(plan.assignments),
            unassigned=list(plan.unassigned),
            spending_limit_hit=self.breaker_open,
            dry_run=True,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def get_statistics(self) -> LedgerStatistics:
        return self.ledger.get_statistics()

    def get_team_status(self, team: int) -> TeamStatus:
        tasks = self.ledger.list_tasks(team=team)
        counts = StatusCounts()
        for task in tasks:
            counts.add(task)
        return TeamStatus(
            team=team,
            counts=counts,
            agents=self.registry.statuses(team=team),
            tasks=tasks,
        )

    def get_overall_status(self) -> OverallStatus:
        return OverallStatus(
            statistics=self.ledger.get_statistics(),
            agents=self.registry.statuses(),
            epics=self.ledger.list_epics(),
            total_cost=self.costs.get_total_cost(),
            breaker_open=self.breaker_open,
            breaker_reason=self._breaker_reason,
            merges_halted=self.merger.halted,
            halt_reason=self.merger.halt_reason,
        )

    def get_summary(self, since: Optional[datetime] = None) -> CostSummary:
        return self.costs.get_summary(since)
