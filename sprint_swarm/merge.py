"""
Test-gated merge pipeline from an agent branch into trunk.

Stages, in order:
1. PRE_MERGE_TEST  - run the test command inside the agent workspace
2. REVIEW          - auto-approve, or ask a pluggable reviewer
3. MERGE           - record the trunk head, pull, merge --no-ff
4. POST_MERGE_TEST - run the test command on trunk; reset to the recorded head on failure
5. SYNC            - merge the new trunk into every workspace

Stages 3-5 touch trunk and run under one lock per repository. Failures are
returned as a MergeResult, never raised. A failed rollback halts the
coordinator until an operator calls reset_halt().
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional

from sprint_swarm.config import MergePolicy
from sprint_swarm.errors import GitCommandError, WorkspaceError
from sprint_swarm.suite_runner import SuiteRunner

if TYPE_CHECKING:
    from sprint_swarm.logger import SwarmLogger
    from sprint_swarm.workspace import WorkspaceManager


class MergeStage(Enum):
    PRE_MERGE_TEST = auto()
    REVIEW = auto()
    MERGE = auto()
    POST_MERGE_TEST = auto()
    SYNC = auto()


class StageStatus(Enum):
    PASSED = auto()
    FAILED = auto()
    SKIPPED = auto()


class MergeOutcome(Enum):
    MERGED = auto()
    TEST_FAILURE = auto()
    REVIEW_REJECTED = auto()
    MERGE_FAILED = auto()
    ROLLBACK_FAILED = auto()
    HALTED = auto()


@dataclass
class StageReport:
    stage: MergeStage
    status: StageStatus
    message: str
    output: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.name,
            "status": self.status.name,
            "message": self.message,
            "output": self.output,
        }


@dataclass
class ReviewDecision:
    approved: bool
    message: str = ""


# (agent_id, task_id, workspace_path) -> decision
Reviewer = Callable[[str, Optional[str], Path], ReviewDecision]


@dataclass
class MergeResult:
    """Structured result of one merge attempt."""
    agent_id: str
    task_id: Optional[str]
    outcome: MergeOutcome
    message: str
    stages: list[StageReport] = field(default_factory=list)
    rolled_back: bool = False
    rollback_point: Optional[str] = None
    merge_commit: Optional[str] = None
    sync_failures: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.outcome == MergeOutcome.MERGED

    @property
    def failed_stage(self) -> Optional[MergeStage]:
        for report in self.stages:
            if report.status == StageStatus.FAILED:
                return report.stage
        return None

    def stage(self, stage: MergeStage) -> Optional[StageReport]:
        for report in self.stages:
            if report.stage == stage:
                return report
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "task_id": self.task_id,
            "outcome": self.outcome.name,
            "success": self.success,
            "message": self.message,
            "stages": [s.to_dict() for s in self.stages],
            "rolled_back": self.rolled_back,
            "rollback_point": self.rollback_point,
            "merge_commit": self.merge_commit,
            "sync_failures": dict(self.sync_failures),
        }


@dataclass
class MergeReadiness:
    ready: bool
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"ready": self.ready, "reason": self.reason}


_trunk_locks: dict[str, threading.Lock] = {}
_trunk_locks_guard = threading.Lock()


def trunk_lock(repo_root: Path) -> threading.Lock:
    """The process-wide lock guarding trunk mutations for one repository."""
    key = str(Path(repo_root).resolve())
    with _trunk_locks_guard:
        lock = _trunk_locks.get(key)
        if lock is None:
            lock = _trunk_locks[key] = threading.Lock()
        return lock


class MergeCoordinator:
    """Runs the merge pipeline for agent workspaces of one repository."""

    def __init__(
        self,
        workspaces: WorkspaceManager,
        policy: Optional[MergePolicy] = None,
        suite_runner: Optional[SuiteRunner] = None,
        reviewer: Optional[Reviewer] = None,
        logger: Optional[SwarmLogger] = None,
    ) -> None:
        self._workspaces = workspaces
        self.policy = policy or MergePolicy(trunk=workspaces.trunk)
        if self.policy.trunk != workspaces.trunk:
            raise ValueError(
                f"Merge trunk {self.policy.trunk!r} differs from workspace trunk {workspaces.trunk!r}"
            )
        self._suite_runner = suite_runner or SuiteRunner(self.policy.test_timeout_seconds)
        self._reviewer = reviewer
        self._logger = logger
        self._git = workspaces.git
        self._repo_root = workspaces.repo_root
        self._lock = trunk_lock(self._repo_root)
        self._halted = False
        self._halt_reason: Optional[str] = None

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level, component="merge")

    @property
    def trunk(self) -> str:
        return self.policy.trunk

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def halt_reason(self) -> Optional[str]:
        return self._halt_reason

    def reset_halt(self) -> None:
        """Resume merging after an operator has repaired trunk."""
        self._log("merge_halt_reset", {"previous_reason": self._halt_reason}, level="warn")
        self._halted = False
        self._halt_reason = None

    # Readiness

    def is_ready_to_merge(self, agent_id: str) -> MergeReadiness:
        if self._halted:
            return MergeReadiness(False, f"merges halted: {self._halt_reason}")
        status = self._workspaces.status(agent_id)
        if not status.exists:
            return MergeReadiness(False, "workspace does not exist")
        if not status.has_uncommitted_changes and status.commits_ahead == 0:
            return MergeReadiness(False, "nothing to merge")
        if status.commits_behind > 0:
            return MergeReadiness(
                False, f"{status.commits_behind} commit(s) behind {self.trunk}; sync first"
            )
        return MergeReadiness(True, "ready to merge")

    # Pipeline

    def merge(self, agent_id: str, task_id: Optional[str] = None) -> MergeResult:
        """Run all stages for agent_id's branch. Never raises for stage failures."""
        result = MergeResult(
            agent_id=agent_id,
            task_id=task_id,
            outcome=MergeOutcome.MERGED,
            message="",
        )

        if self._halted:
            result.outcome = MergeOutcome.HALTED
            result.message = f"Merges halted: {self._halt_reason}"
            return result

        path = self._workspaces.get_path(agent_id)
        if path is None:
            result.stages.append(StageReport(
                MergeStage.PRE_MERGE_TEST, StageStatus.FAILED, "workspace does not exist"
            ))
            result.outcome = MergeOutcome.MERGE_FAILED
            result.message = f"No workspace for {agent_id}"
            return result

        self._log("merge_started", {"agent_id": agent_id, "task_id": task_id})

        if not self._pre_merge_test(path, result):
            return self._finish(result, MergeOutcome.TEST_FAILURE, "Pre-merge tests failed")

        if not self._review(agent_id, task_id, path, result):
            return self._finish(result, MergeOutcome.REVIEW_REJECTED, "Review rejected the change")

        with self._lock:
            return self._merge_to_trunk(agent_id, task_id, result)

    def _finish(self, result: MergeResult, outcome: MergeOutcome, message: str) -> MergeResult:
        result.outcome = outcome
        result.message = message
        level = "info" if outcome == MergeOutcome.MERGED else "warn"
        if outcome == MergeOutcome.ROLLBACK_FAILED:
            level = "error"
        self._log("merge_finished", {
            "agent_id": result.agent_id,
            "task_id": result.task_id,
            "outcome": outcome.name,
            "message": message,
            "rolled_back": result.rolled_back,
        }, level=level)
        return result

    def _run_tests(self, cwd: Path, stage: MergeStage, enabled: bool, result: MergeResult) -> bool:
        if not enabled:
            result.stages.append(StageReport(stage, StageStatus.SKIPPED, "disabled by policy"))
            return True
        if not self.policy.test_command:
            result.stages.append(StageReport(stage, StageStatus.SKIPPED, "no test command configured"))
            return True

        outcome = self._suite_runner.run(
            self.policy.test_command, cwd, timeout_seconds=self.policy.test_timeout_seconds
        )
        status = StageStatus.PASSED if outcome.success else StageStatus.FAILED
        result.stages.append(StageReport(stage, status, outcome.summary, outcome.output_tail))
        return outcome.success

    def _pre_merge_test(self, path: Path, result: MergeResult) -> bool:
        return self._run_tests(path, MergeStage.PRE_MERGE_TEST, self.policy.pre_merge_tests, result)

    def _review(self, agent_id: str, task_id: Optional[str], path: Path, result: MergeResult) -> bool:
        if not self.policy.review_enabled:
            result.stages.append(StageReport(MergeStage.REVIEW, StageStatus.SKIPPED, "review disabled"))
            return True
        if self.policy.auto_approve_review:
            result.stages.append(StageReport(MergeStage.REVIEW, StageStatus.PASSED, "auto-approved"))
            return True
        if self._reviewer is None:
            result.stages.append(StageReport(MergeStage.REVIEW, StageStatus.PASSED, "no reviewer configured"))
            return True

        decision = self._reviewer(agent_id, task_id, path)
        status = StageStatus.PASSED if decision.approved else StageStatus.FAILED
        message = decision.message or ("approved" if decision.approved else "rejected")
        result.stages.append(StageReport(MergeStage.REVIEW, status, message))
        return decision.approved

    def _merge_to_trunk(self, agent_id: str, task_id: Optional[str], result: MergeResult) -> MergeResult:
        """Stages 3-5. Caller holds the trunk lock."""
        branch = self._workspaces.branch_for(agent_id)
        current_stage = MergeStage.MERGE

        try:
            result.rollback_point = self._git.rev_parse(self.trunk)
            self._git.run("checkout", self.trunk)
            notes = self._pull_trunk()

            label = f" ({task_id})" if task_id else ""
            self._git.run(
                "-c", "user.name=sprint-swarm",
                "-c", "user.email=sprint-swarm@sprint-swarm.local",
                "merge", "--no-ff", "-m", f"Merge {branch}{label}", branch,
            )
            result.merge_commit = self._git.rev_parse("HEAD")
            result.stages.append(StageReport(
                MergeStage.MERGE, StageStatus.PASSED,
                f"merged {branch} into {self.trunk}" + (f"; {notes}" if notes else ""),
            ))

            current_stage = MergeStage.POST_MERGE_TEST
            if not self._run_tests(
                self._repo_root, MergeStage.POST_MERGE_TEST, self.policy.post_merge_tests, result
            ):
                if self._rollback(result.rollback_point):
                    result.rolled_back = True
                    return self._finish(
                        result, MergeOutcome.TEST_FAILURE,
                        f"Post-merge tests failed; {self.trunk} rolled back to {result.rollback_point[:7]}",
                    )
                return self._halt(result, "Post-merge tests failed and rollback failed")

            current_stage = MergeStage.SYNC
            self._sync(agent_id, result)

        except Exception as e:
            if result.stage(current_stage) is None:
                result.stages.append(StageReport(current_stage, StageStatus.FAILED, str(e)))
            self._git.run("merge", "--abort", check=False)
            if self._rollback(result.rollback_point):
                result.rolled_back = result.rollback_point is not None
                return self._finish(
                    result, MergeOutcome.MERGE_FAILED,
                    f"{current_stage.name} failed, {self.trunk} rolled back: {e}",
                )
            return self._halt(result, f"{current_stage.name} failed and rollback failed: {e}")

        if self.policy.delete_branch_after_merge:
            self._delete_branch(agent_id, branch)

        return self._finish(
            result, MergeOutcome.MERGED,
            f"Merged {branch} into {self.trunk}" + (f" for {task_id}" if task_id else ""),
        )

    def _pull_trunk(self) -> str:
        """Pull trunk when a remote exists. Returns a note for the stage report."""
        if not self._git.has_remote():
            self._log("merge_pull_skipped", {"reason": "no remote"}, level="warn")
            return "no remote, pull skipped"
        try:
            self._git.run("pull", "--ff-only")
        except GitCommandError as e:
            self._log("merge_pull_failed", {"error": str(e)}, level="warn")
            return "pull failed, merging local trunk"
        return ""

    def _rollback(self, rollback_point: Optional[str]) -> bool:
        """Reset trunk to rollback_point. True when trunk is known good."""
        if rollback_point is None:
            return True
        try:
            self._git.run("checkout", "-f", self.trunk)
            self._git.run("reset", "--hard", rollback_point)
            restored = self._git.rev_parse("HEAD") == rollback_point
        except GitCommandError as e:
            self._log("merge_rollback_failed", {"rollback_point": rollback_point, "error": str(e)}, level="error")
            return False
        if restored:
            self._log("merge_rolled_back", {"rollback_point": rollback_point}, level="warn")
        return restored

    def _halt(self, result: MergeResult, reason: str) -> MergeResult:
        self._halted = True
        self._halt_reason = reason
        result.rolled_back = False
        return self._finish(result, MergeOutcome.ROLLBACK_FAILED, f"{reason}; merges halted")

    def _sync(self, agent_id: str, result: MergeResult) -> None:
        """Bring every workspace up to date with trunk. Failures are recorded, not raised."""
        if not self.policy.sync_agents:
            result.stages.append(StageReport(MergeStage.SYNC, StageStatus.SKIPPED, "disabled by policy"))
            return

        synced = []
        for workspace in self._workspaces.workspaces():
            if not workspace.exists:
                continue
            try:
                self._workspaces.sync_with_trunk(workspace.agent_id)
                synced.append(workspace.agent_id)
            except (GitCommandError, WorkspaceError) as e:
                result.sync_failures[workspace.agent_id] = str(e)
                self._log("merge_sync_failed", {
                    "agent_id": workspace.agent_id,
                    "merged_agent": agent_id,
                    "error": str(e),
                }, level="warn")

        message = f"synced {len(synced)} workspace(s)"
        if result.sync_failures:
            message += f"; {len(result.sync_failures)} failed: {', '.join(sorted(result.sync_failures))}"
        result.stages.append(StageReport(MergeStage.SYNC, StageStatus.PASSED, message))

    def _delete_branch(self, agent_id: str, branch: str) -> None:
        """Drop the workspace and its branch; the next ensure() starts fresh from trunk."""
        self._workspaces.remove(agent_id)
        try:
            self._git.run("branch", "-D", branch)
            self._log("merge_branch_deleted", {"agent_id": agent_id, "branch": branch})
        except GitCommandError as e:
            self._log("merge_branch_delete_failed", {"branch": branch, "error": str(e)}, level="warn")
