"""Tests for test-command execution with a hard timeout."""

from __future__ import annotations

import time

from sprint_swarm.suite_runner import SuiteResult, SuiteRunner


class TestSuiteRunner:

    def test_passing_command(self, tmp_path):
        result = SuiteRunner().run(["sh", "-c", "echo '3 passed in 0.01s'"], tmp_path)
        assert result.success
        assert result.returncode == 0
        assert result.passed == 3
        assert result.summary == "tests passed (3 passed)"

    def test_failing_command(self, tmp_path):
        script = "echo 'FAILED tests/test_x.py::test_y - assert 1 == 2'; echo '1 failed, 2 passed'; exit 1"
        result = SuiteRunner().run(["sh", "-c", script], tmp_path)
        assert not result.success
        assert result.returncode == 1
        assert result.failed == 1
        assert result.passed == 2
        assert result.failures == ["tests/test_x.py::test_y - assert 1 == 2"]
        assert "1 failed" in result.summary

    def test_runs_in_cwd(self, tmp_path):
        (tmp_path / "marker.txt").write_text("here\n")
        assert SuiteRunner().run(["sh", "-c", "test -f marker.txt"], tmp_path).success

    def test_timeout_is_a_failure_not_a_hang(self, tmp_path):
        start = time.monotonic()
        result = SuiteRunner(timeout_seconds=1).run(["sleep", "30"], tmp_path)
        assert time.monotonic() - start < 20
        assert not result.success
        assert result.timed_out
        assert "timed out" in result.summary

    def test_per_call_timeout_overrides_default(self, tmp_path):
        result = SuiteRunner(timeout_seconds=60).run(["sleep", "30"], tmp_path, timeout_seconds=1)
        assert result.timed_out

    def test_empty_command(self, tmp_path):
        result = SuiteRunner().run([], tmp_path)
        assert not result.success
        assert result.error == "No test command configured"

    def test_missing_binary(self, tmp_path):
        result = SuiteRunner().run(["definitely-not-a-real-binary-xyz"], tmp_path)
        assert not result.success
        assert result.error.startswith("Failed to run tests")

    def test_output_tail_is_bounded(self):
        result = SuiteResult(success=True, output="x" * 10_000)
        assert len(result.output_tail) == 4000
