"""
Tests for the orchestrator execute/merge loop.

The work executor is replaced by a scripted fake that writes one file per
task into the agent workspace; everything else (ledger, git worktrees,
merge pipeline, cost accounting) is real.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import pytest

from sprint_swarm.config import SpendingLimits
from sprint_swarm.errors import InvalidStateError
from sprint_swarm.executor import AgentContext, ExecutionResult
from sprint_swarm.merge import MergeOutcome
from sprint_swarm.models import Task, TaskStatus, TokenUsage
from sprint_swarm.orchestrator import ExecutionStatus, Orchestrator
from sprint_swarm.resolver import resolve


# Passes everywhere except on trunk once task-001.txt has landed there
REJECTS_TASK_001_ON_TRUNK = [
    "sh", "-c",
    'test ! -f task-001.txt || test "$(git rev-parse --abbrev-ref HEAD)" != main',
]


class ScriptedExecutor:
    """Writes <task-id>.txt into the workspace and returns a canned result."""

    def __init__(
        self,
        success: bool = True,
        usage: Optional[TokenUsage] = None,
        raises: Optional[Exception] = None,
    ) -> None:
        self.success = success
        self.usage = usage or TokenUsage(model="claude-sonnet-4-5", input_tokens=1000, output_tokens=200, cached_tokens=400)
        self.raises = raises
        self.calls: list[tuple[str, str, Path]] = []

    def execute(self, task: Task, context: AgentContext) -> ExecutionResult:
        self.calls.append((task.id, context.agent.id, context.workspace_path))
        (context.workspace_path / f"{task.id.lower()}.txt").write_text(f"{task.title}\n")
        if self.raises is not None:
            raise self.raises
        if not self.success:
            return ExecutionResult(success=False, output="gave up", usage=self.usage, error="tests still red")
        return ExecutionResult(success=True, output=f"done {task.id}", usage=self.usage)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def orchestrator(swarm_config, executor) -> Orchestrator:
    return Orchestrator.from_config(swarm_config, executor=executor)


# ============================================================================
# Single task execution
# ============================================================================

class TestExecuteTask:

    def test_success_commits_and_merges(self, orchestrator, executor, git_repo, run_git):
        task = orchestrator.create_task("Add login endpoint", story_points=3, team=1)

        execution = orchestrator.execute_task(task.id)

        assert execution.status == ExecutionStatus.COMPLETED, execution.error
        assert execution.agent_id == "alice"
        assert execution.commit is not None
        assert execution.merge is not None and execution.merge.success
        assert execution.checkpoint.startswith(f"checkpoint/{task.id}/")
        assert execution.cost == pytest.approx(0.00492)

        workspace = executor.calls[0][2]
        assert workspace == git_repo.resolve() / ".worktrees" / "alice"
        assert (git_repo / "task-001.txt").exists()

        stored = orchestrator.ledger.get_task(task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert orchestrator.registry.load("alice") == 0
        assert orchestrator.costs.get_cost_by_task(task.id) == pytest.approx(0.00492)

    def test_failure_rolls_back_and_keeps_task_in_progress(self, swarm_config):
        failing = ScriptedExecutor(success=False)
        orchestrator = Orchestrator.from_config(swarm_config, executor=failing)
        task = orchestrator.create_task("Flaky work", team=1)

        execution = orchestrator.execute_task(task.id)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == "tests still red"
        assert execution.rolled_back
        workspace = failing.calls[0][2]
        assert not (workspace / "task-001.txt").exists()

        stored = orchestrator.ledger.get_task(task.id)
        assert stored.status == TaskStatus.IN_PROGRESS
        assert stored.assigned_to == "alice"
        # The failed call was still billed
        assert orchestrator.costs.get_cost_by_task(task.id) > 0

    def test_failed_task_can_be_retried(self, swarm_config):
        executor = ScriptedExecutor(success=False)
        orchestrator = Orchestrator.from_config(swarm_config, executor=executor)
        task = orchestrator.create_task("Retry me", team=1)
        orchestrator.execute_task(task.id)

        executor.success = True
        assert orchestrator.execute_task(task.id).status == ExecutionStatus.COMPLETED

    def test_executor_crash_is_a_failure(self, swarm_config):
        orchestrator = Orchestrator.from_config(swarm_config, executor=ScriptedExecutor(raises=RuntimeError("segfault")))
        task = orchestrator.create_task("Crash", team=1)

        execution = orchestrator.execute_task(task.id)
        assert execution.status == ExecutionStatus.FAILED
        assert "segfault" in execution.error

    def test_no_capacity(self, orchestrator):
        first = orchestrator.create_task("Pipeline A", team=2)
        second = orchestrator.create_task("Pipeline B", team=2)
        assert orchestrator.assign_task(first.id) == "dave"

        execution = orchestrator.execute_task(second.id)
        assert execution.status == ExecutionStatus.UNASSIGNED
        assert orchestrator.ledger.get_task(second.id).status == TaskStatus.PENDING

    def test_completed_task_cannot_be_executed(self, orchestrator):
        task = orchestrator.create_task("Once", team=1)
        orchestrator.execute_task(task.id)
        with pytest.raises(InvalidStateError):
            orchestrator.execute_task(task.id)

    def test_refused_merge_keeps_task_in_progress(self, swarm_config, git_repo):
        swarm_config.merge.post_merge_tests = True
        swarm_config.merge.test_command = REJECTS_TASK_001_ON_TRUNK
        executor = ScriptedExecutor()
        orchestrator = Orchestrator.from_config(swarm_config, executor=executor)
        first = orchestrator.create_task("Breaks trunk", team=1)
        second = orchestrator.create_task("Builds on it", team=1, dependencies=[first.id])

        execution = orchestrator.execute_task(first.id)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.merge.outcome == MergeOutcome.TEST_FAILURE
        assert "TEST_FAILURE" in execution.error
        assert execution.rolled_back
        assert not (git_repo / "task-001.txt").exists()
        assert not (executor.calls[0][2] / "task-001.txt").exists()

        assert orchestrator.ledger.get_task(first.id).status == TaskStatus.IN_PROGRESS
        assert second.id not in resolve(orchestrator.ledger.list_tasks()).ready_ids

    def test_refused_merge_does_not_poison_later_merges(self, swarm_config, git_repo):
        swarm_config.merge.post_merge_tests = True
        swarm_config.merge.test_command = REJECTS_TASK_001_ON_TRUNK
        orchestrator = Orchestrator.from_config(swarm_config, executor=ScriptedExecutor())
        rejected = orchestrator.create_task("Breaks trunk", team=1)
        unrelated = orchestrator.create_task("Harmless", team=1)
        orchestrator.execute_task(rejected.id)

        orchestrator.ledger.assign(unrelated.id, "alice")
        execution = orchestrator.execute_task(unrelated.id)

        assert execution.status == ExecutionStatus.COMPLETED, execution.error
        assert execution.merge.success
        assert (git_repo / "task-002.txt").exists()
        assert not (git_repo / "task-001.txt").exists()

    def test_retry_after_refused_merge(self, swarm_config, git_repo):
        swarm_config.merge.pre_merge_tests = True
        swarm_config.merge.test_command = ["sh", "-c", "exit 1"]
        orchestrator = Orchestrator.from_config(swarm_config, executor=ScriptedExecutor())
        task = orchestrator.create_task("Untested", team=1)
        assert orchestrator.execute_task(task.id).status == ExecutionStatus.FAILED

        swarm_config.merge.test_command = ["sh", "-c", "exit 0"]
        execution = orchestrator.execute_task(task.id)

        assert execution.status == ExecutionStatus.COMPLETED, execution.error
        assert orchestrator.ledger.get_task(task.id).status == TaskStatus.COMPLETED
        assert (git_repo / "task-001.txt").exists()

    def test_git_disabled_runs_in_repo_root(self, swarm_config, git_repo):
        swarm_config.git.enabled = False
        executor = ScriptedExecutor()
        orchestrator = Orchestrator.from_config(swarm_config, executor=executor)
        task = orchestrator.create_task("No git", team=1)

        execution = orchestrator.execute_task(task.id)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.commit is None
        assert execution.merge is None
        assert executor.calls[0][2] == Path(swarm_config.repo_root)
        assert (git_repo / "task-001.txt").exists()


# ============================================================================
# Spending limits
# ============================================================================

class TestSpendingBreaker:

    @pytest.fixture
    def limited(self, swarm_config) -> Orchestrator:
        swarm_config.costs.limits = SpendingLimits(total=0.001)
        return Orchestrator.from_config(swarm_config, executor=ScriptedExecutor())

    def test_limit_opens_breaker(self, limited):
        task = limited.create_task("Expensive", team=1)

        execution = limited.execute_task(task.id)
        assert execution.status == ExecutionStatus.SPENDING_LIMIT
        assert limited.breaker_open
        assert "Total" in limited.breaker_reason
        assert limited.ledger.get_task(task.id).status == TaskStatus.IN_PROGRESS

    def test_open_breaker_skips_new_work(self, limited):
        first = limited.create_task("Expensive", team=1)
        second = limited.create_task("Next", team=1)
        limited.execute_task(first.id)

        assert limited.execute_task(second.id).status == ExecutionStatus.SKIPPED
        report = limited.run_sprint()
        assert report.spending_limit_hit
        assert report.assigned == {}
        assert second.id in report.unassigned

    def test_tripped_limit_drops_uncommitted_work(self, limited, run_git):
        task = limited.create_task("Expensive", team=1)

        execution = limited.execute_task(task.id)

        assert execution.status == ExecutionStatus.SPENDING_LIMIT
        assert execution.rolled_back
        workspace = limited.workspaces.get_path("alice")
        assert run_git(workspace, "status", "--porcelain") == ""

        limited.costs.update_limits(total=100)
        limited.reset_breaker()
        follow_up = limited.create_task("Follow-up", team=1)
        limited.ledger.assign(follow_up.id, "alice")
        done = limited.execute_task(follow_up.id)

        assert done.status == ExecutionStatus.COMPLETED, done.error
        committed = run_git(workspace, "show", "--name-only", "--format=", done.commit)
        assert committed.split() == ["task-002.txt"]

    def test_reset_breaker(self, limited):
        task = limited.create_task("Expensive", team=1)
        limited.execute_task(task.id)
        limited.reset_breaker()
        assert not limited.breaker_open
        assert limited.get_overall_status().breaker_reason is None

    def test_disabled_cost_tracking_ignores_limits(self, swarm_config):
        swarm_config.costs.enabled = False
        swarm_config.costs.limits = SpendingLimits(total=0.001)
        orchestrator = Orchestrator.from_config(swarm_config, executor=ScriptedExecutor())
        task = orchestrator.create_task("Free", team=1)
        assert orchestrator.execute_task(task.id).success


# ============================================================================
# Sprints
# ============================================================================

class TestRunSprint:

    def test_dependency_chain_over_two_passes(self, orchestrator):
        model = orchestrator.create_task("Cart model", story_points=3, team=1)
        api = orchestrator.create_task("Cart API", story_points=2, team=1, dependencies=[model.id])
        etl = orchestrator.create_task("Nightly export", story_points=2, team=2)

        first = orchestrator.run_sprint()
        assert first.ready == [model.id, etl.id]
        assert first.blocked == [api.id]
        assert first.assigned == {model.id: "alice", etl.id: "dave"}
        assert sorted(first.completed) == sorted([model.id, etl.id])
        assert first.failed == []
        assert len(first.merges) == 2
        assert all(m.success for m in first.merges)

        second = orchestrator.run_sprint()
        assert second.completed == [api.id]
        assert orchestrator.get_statistics().overall.completed == 3

    def test_sprint_filter(self, orchestrator):
        now = orchestrator.create_task("Now", team=1, sprint=1)
        later = orchestrator.create_task("Later", team=1, sprint=2)

        report = orchestrator.run_sprint(sprint=2)
        assert report.ready == [later.id]
        assert report.completed == [later.id]
        assert orchestrator.ledger.get_task(now.id).status == TaskStatus.PENDING

    def test_cycles_are_reported_not_run(self, orchestrator):
        # TASK-001 depends on TASK-002, which is created next and depends back
        a = orchestrator.create_task("A", team=1, dependencies=["TASK-002"])
        orchestrator.create_task("B", team=1, dependencies=[a.id])

        report = orchestrator.run_sprint()
        assert report.cycles
        assert report.assigned == {}

    def test_auto_execute_off_only_assigns(self, swarm_config, executor):
        swarm_config.scheduler.auto_execute = False
        orchestrator = Orchestrator.from_config(swarm_config, executor=executor)
        task = orchestrator.create_task("Assign only", team=1)

        report = orchestrator.run_sprint()
        assert report.assigned == {task.id: "alice"}
        assert report.completed == []
        assert executor.calls == []

    def test_simulate_changes_nothing(self, orchestrator, executor):
        a = orchestrator.create_task("A", story_points=5, team=1)
        b = orchestrator.create_task("B", story_points=3, team=1)

        plan = orchestrator.simulate()
        assert plan.dry_run
        assert plan.assigned == {a.id: "alice", b.id: "bob"}
        assert orchestrator.ledger.get_task(a.id).status == TaskStatus.PENDING
        assert executor.calls == []


# ============================================================================
# Administration and queries
# ============================================================================

class TestAdministration:

    def test_block_releases_agent(self, orchestrator):
        task = orchestrator.create_task("Blocked later", team=1)
        orchestrator.assign_task(task.id)
        assert orchestrator.registry.load("alice") == 1

        orchestrator.block_task(task.id, "waiting on vendor")
        assert orchestrator.registry.load("alice") == 0
        assert orchestrator.unblock_task(task.id).status == TaskStatus.PENDING

    def test_delete_releases_agent(self, orchestrator):
        task = orchestrator.create_task("Doomed", team=1)
        orchestrator.assign_task(task.id)
        assert orchestrator.delete_task(task.id) is True
        assert orchestrator.registry.load("alice") == 0
        assert orchestrator.delete_task(task.id) is False

    def test_auto_assign(self, orchestrator):
        orchestrator.create_task("One", team=1)
        orchestrator.create_task("Two", team=1)
        orchestrator.create_task("Three", team=1)
        orchestrator.create_task("Four", team=1)


        summary = orchestrator.auto_assign_tasks()
        # Three team-1 agents, one task slot each
        assert summary.assigned == ["TASK-001", "TASK-002", "TASK-003"]
        assert summary.unassigned == ["TASK-004"]
        assert set(summary.assignments.values()) == {"alice", "bob", "carol"}


class TestQueries:

    def test_overall_status(self, orchestrator):
        epic = orchestrator.create_epic("Checkout", estimated_story_points=5, team=1)
        task = orchestrator.create_task("Cart", story_points=5, team=1, epic_id=epic.id)
        orchestrator.execute_task(task.id)

        status = orchestrator.get_overall_status()
        assert status.statistics.overall.completed == 1
        assert status.total_cost == pytest.approx(0.00492)
        assert not status.breaker_open
        assert not status.merges_halted
        assert status.to_dict()["epics"][0]["id"] == epic.id

    def test_team_status(self, orchestrator):
        orchestrator.create_task("Team one", team=1)
        orchestrator.create_task("Team two", team=2)

        status = orchestrator.get_team_status(2)
        assert [t.title for t in status.tasks] == ["Team two"]
        assert [a.id for a in status.agents] == ["dave"]
        assert status.counts.pending == 1

    def test_cost_summary(self, orchestrator):
        task = orchestrator.create_task("Billable", team=1)
        orchestrator.execute_task(task.id)

        summary = orchestrator.get_summary()
        assert summary.request_count == 1
        assert summary.cost_by_agent == {"alice": pytest.approx(0.00492)}
