"""
Tests for the test-gated merge pipeline.

Test commands are small shell snippets so each stage can be made to pass
or fail independently:
- PASS always exits 0
- FAIL always exits 1
- FAILS_ON_TRUNK passes inside an agent worktree and fails on main, which
  isolates the post-merge stage
- SLOW_PASS passes after a short pause so concurrent merges overlap
"""

from __future__ import annotations

import threading

import pytest

from sprint_swarm.config import MergePolicy
from sprint_swarm.merge import (
    MergeCoordinator,
    MergeOutcome,
    MergeStage,
    ReviewDecision,
    StageStatus,
)
from sprint_swarm.workspace import WorkspaceManager


PASS = ["sh", "-c", "exit 0"]
FAIL = ["sh", "-c", "echo '1 failed'; exit 1"]
FAILS_ON_TRUNK = ["sh", "-c", 'test "$(git rev-parse --abbrev-ref HEAD)" != main']
SLOW_PASS = ["sh", "-c", "sleep 0.3"]


@pytest.fixture
def workspaces(git_repo) -> WorkspaceManager:
    manager = WorkspaceManager(git_repo)
    manager.initialize()
    return manager


def make_coordinator(workspaces, **policy) -> MergeCoordinator:
    policy.setdefault("test_command", PASS)
    policy.setdefault("test_timeout_seconds", 30)
    return MergeCoordinator(workspaces, policy=MergePolicy(**policy))


def agent_change(workspaces, commit, agent_id: str, name: str, content: str) -> None:
    path = workspaces.ensure(agent_id)
    commit(name, content, f"{agent_id} edits {name}", repo=path)


# ============================================================================
# Happy path
# ============================================================================

class TestSuccessfulMerge:

    def test_merges_into_trunk(self, workspaces, git_repo, commit, run_git):
        agent_change(workspaces, commit, "alice", "feature.py", "x = 1\n")
        coordinator = make_coordinator(workspaces)

        result = coordinator.merge("alice", "TASK-001")

        assert result.success, result.message
        assert result.merge_commit == run_git(git_repo, "rev-parse", "main")
        assert (git_repo / "feature.py").exists()
        assert [s.stage for s in result.stages] == [
            MergeStage.PRE_MERGE_TEST,
            MergeStage.REVIEW,
            MergeStage.MERGE,
            MergeStage.POST_MERGE_TEST,
            MergeStage.SYNC,
        ]
        assert "(TASK-001)" in run_git(git_repo, "log", "-1", "--format=%s")

    def test_other_workspaces_are_synced(self, workspaces, commit):
        agent_change(workspaces, commit, "alice", "feature.py", "x = 1\n")
        bob = workspaces.ensure("bob")

        result = make_coordinator(workspaces).merge("alice")

        assert result.success
        assert (bob / "feature.py").exists()
        assert workspaces.status("bob").commits_behind == 0

    def test_disabled_stages_are_skipped(self, workspaces, commit):
        agent_change(workspaces, commit, "alice", "feature.py", "x = 1\n")
        coordinator = make_coordinator(
            workspaces, pre_merge_tests=False, post_merge_tests=False, sync_agents=False,
        )
        result = coordinator.merge("alice")
        assert result.success
        for stage in (MergeStage.PRE_MERGE_TEST, MergeStage.POST_MERGE_TEST, MergeStage.SYNC):
            assert result.stage(stage).status == StageStatus.SKIPPED

    def test_empty_test_command_skips_tests(self, workspaces, commit):
        agent_change(workspaces, commit, "alice", "feature.py", "x = 1\n")
        result = make_coordinator(workspaces, test_command=[]).merge("alice")
        assert result.success
        assert result.stage(MergeStage.PRE_MERGE_TEST).status == StageStatus.SKIPPED

    def test_delete_branch_after_merge(self, workspaces, git_repo, commit, run_git):
        agent_change(workspaces, commit, "alice", "feature.py", "x = 1\n")
        result = make_coordinator(workspaces, delete_branch_after_merge=True).merge("alice")

        assert result.success
        assert not workspaces.exists("alice")
        assert run_git(git_repo, "branch", "--list", "worktree/alice") == ""


# ============================================================================
# Failures
# ============================================================================

class TestFailedMerge:

    def test_pre_merge_failure_leaves_trunk_untouched(self, workspaces, git_repo, commit, run_git):
        before = run_git(git_repo, "rev-parse", "main")
        agent_change(workspaces, commit, "alice", "feature.py", "x = 1\n")

        result = make_coordinator(workspaces, test_command=FAIL).merge("alice")

        assert result.outcome == MergeOutcome.TEST_FAILURE
        assert result.failed_stage == MergeStage.PRE_MERGE_TEST
        assert result.stage(MergeStage.MERGE) is None
        assert run_git(git_repo, "rev-parse", "main") == before

    def test_post_merge_failure_restores_exact_trunk(self, workspaces, git_repo, commit, run_git):
        before = run_git(git_repo, "rev-parse", "main")
        agent_change(workspaces, commit, "alice", "feature.py", "x = 1\n")

        result = make_coordinator(workspaces, test_command=FAILS_ON_TRUNK).merge("alice")

        assert result.outcome == MergeOutcome.TEST_FAILURE
        assert result.failed_stage == MergeStage.POST_MERGE_TEST
        assert result.rolled_back
        assert result.rollback_point == before
        assert run_git(git_repo, "rev-parse", "main") == before
        assert not (git_repo / "feature.py").exists()

    def test_review_rejection(self, workspaces, git_repo, commit, run_git):
        before = run_git(git_repo, "rev-parse", "main")
        agent_change(workspaces, commit, "alice", "feature.py", "x = 1\n")
        calls = []

        def reviewer(agent_id, task_id, path):
            calls.append((agent_id, task_id))
            return ReviewDecision(approved=False, message="needs tests")

        coordinator = MergeCoordinator(
            workspaces,
            policy=MergePolicy(test_command=PASS, review_enabled=True, auto_approve_review=False),
            reviewer=reviewer,
        )
        result = coordinator.merge("alice", "TASK-009")

        assert result.outcome == MergeOutcome.REVIEW_REJECTED
        assert result.stage(MergeStage.REVIEW).message == "needs tests"
        assert calls == [("alice", "TASK-009")]
        assert run_git(git_repo, "rev-parse", "main") == before

    def test_merge_conflict_is_rolled_back(self, workspaces, git_repo, commit, run_git):
        agent_change(workspaces, commit, "alice", "README.md", "agent\n")
        before = commit("README.md", "trunk\n", repo=git_repo)

        result = make_coordinator(workspaces).merge("alice")

        assert result.outcome == MergeOutcome.MERGE_FAILED
        assert result.failed_stage == MergeStage.MERGE
        assert run_git(git_repo, "rev-parse", "main") == before
        assert run_git(git_repo, "status", "--porcelain") == ""

    def test_missing_workspace(self, workspaces):
        result = make_coordinator(workspaces).merge("ghost")
        assert result.outcome == MergeOutcome.MERGE_FAILED
        assert not result.success

    def test_sync_failure_does_not_fail_merge(self, workspaces, commit):
        agent_change(workspaces, commit, "bob", "README.md", "bob's readme\n")
        agent_change(workspaces, commit, "alice", "README.md", "alice's readme\n")

        result = make_coordinator(workspaces).merge("alice")

        assert result.success
        assert set(result.sync_failures) == {"bob"}
        assert result.stage(MergeStage.SYNC).status == StageStatus.PASSED


# ============================================================================
# Concurrency
# ============================================================================

class TestConcurrentMerges:

    def test_trunk_stages_are_serialized(self, workspaces, git_repo, commit, run_git):
        start = run_git(git_repo, "rev-parse", "main")
        agent_change(workspaces, commit, "alice", "alice.py", "a = 1\n")
        agent_change(workspaces, commit, "bob", "bob.py", "b = 1\n")
        # Separate coordinators still share the per-repository trunk lock
        coordinators = {
            agent_id: make_coordinator(workspaces, test_command=SLOW_PASS)
            for agent_id in ("alice", "bob")
        }
        barrier = threading.Barrier(2)
        results = {}

        def run(agent_id):
            barrier.wait()
            results[agent_id] = coordinators[agent_id].merge(agent_id)

        threads = [threading.Thread(target=run, args=(agent_id,)) for agent_id in coordinators]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=120)

        assert all(r.success for r in results.values()), {a: r.message for a, r in results.items()}
        first, second = sorted(results.values(), key=lambda r: r.rollback_point != start)
        assert first.rollback_point == start
        assert second.rollback_point == first.merge_commit

        history = run_git(git_repo, "rev-list", "--first-parent", f"{start}..main").split()
        assert history == [second.merge_commit, first.merge_commit]
        assert (git_repo / "alice.py").exists()
        assert (git_repo / "bob.py").exists()
        assert run_git(git_repo, "status", "--porcelain") == ""


# ============================================================================
# Halt and readiness
# ============================================================================

class TestHalt:

    def test_failed_rollback_halts_merges(self, workspaces, commit, monkeypatch):
        agent_change(workspaces, commit, "alice", "feature.py", "x = 1\n")
        coordinator = make_coordinator(workspaces, test_command=FAILS_ON_TRUNK)
        monkeypatch.setattr(coordinator, "_rollback", lambda rollback_point: False)

        result = coordinator.merge("alice")
        assert result.outcome == MergeOutcome.ROLLBACK_FAILED
        assert coordinator.halted
        assert "rollback failed" in coordinator.halt_reason

        blocked = coordinator.merge("alice")
        assert blocked.outcome == MergeOutcome.HALTED
        assert blocked.stages == []
        assert not coordinator.is_ready_to_merge("alice").ready

        coordinator.reset_halt()
        assert not coordinator.halted


class TestTrunk:

    def test_policy_trunk_must_match_workspaces(self, workspaces):
        with pytest.raises(ValueError, match="differs from workspace trunk"):
            MergeCoordinator(workspaces, policy=MergePolicy(trunk="release"))


class TestReadiness:

    def test_missing_workspace(self, workspaces):
        readiness = make_coordinator(workspaces).is_ready_to_merge("ghost")
        assert not readiness.ready

    def test_nothing_to_merge(self, workspaces):
        workspaces.ensure("alice")
        readiness = make_coordinator(workspaces).is_ready_to_merge("alice")
        assert not readiness.ready
        assert readiness.reason == "nothing to merge"

    def test_behind_trunk(self, workspaces, git_repo, commit):
        agent_change(workspaces, commit, "alice", "feature.py", "x = 1\n")
        commit("other.py", "y = 2\n", repo=git_repo)
        readiness = make_coordinator(workspaces).is_ready_to_merge("alice")
        assert not readiness.ready
        assert "behind" in readiness.reason

    def test_ready(self, workspaces, commit):
        agent_change(workspaces, commit, "alice", "feature.py", "x = 1\n")
        assert make_coordinator(workspaces).is_ready_to_merge("alice").ready
