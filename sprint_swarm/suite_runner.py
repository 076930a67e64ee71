"""
Test-command execution with a hard timeout.

The merge pipeline runs the configured test command inside an agent
workspace (pre-merge) and on trunk (post-merge). A timeout is reported as a
failed run, never as a hang.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

DEFAULT_TIMEOUT = 300  # 5 minutes
OUTPUT_TAIL_CHARS = 4000


@dataclass
class SuiteResult:
    """Outcome of one test-command run."""
    success: bool
    returncode: Optional[int] = None
    timed_out: bool = False
    duration_seconds: float = 0.0
    output: str = ""
    error: Optional[str] = None
    passed: int = 0
    failed: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def summary(self) -> str:
        """One-line human readable summary."""
        if self.timed_out:
            return self.error or "tests timed out"
        if self.error:
            return self.error
        if self.success:
            return f"tests passed ({self.passed} passed)" if self.passed else "tests passed"
        if self.failed:
            return f"tests failed ({self.failed} failed, exit {self.returncode})"
        return f"tests failed (exit {self.returncode})"

    @property
    def output_tail(self) -> str:
        return self.output[-OUTPUT_TAIL_CHARS:]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "returncode": self.returncode,
            "timed_out": self.timed_out,
            "duration_seconds": self.duration_seconds,
            "passed": self.passed,
            "failed": self.failed,
            "failures": list(self.failures),
            "error": self.error,
        }


class SuiteRunner:
    """
    Runs a test command with a hard timeout.

    On expiry the process gets SIGTERM, then SIGKILL along with its children.
    """

    def __init__(self, timeout_seconds: int = DEFAULT_TIMEOUT) -> None:
        self.timeout_seconds = timeout_seconds
        self._logger = logging.getLogger(__name__)

    def run(
        self,
        command: list[str],
        cwd: str | Path,
        timeout_seconds: Optional[int] = None,
    ) -> SuiteResult:
        """
        Run command in cwd.

        Args:
            command: Argument vector, e.g. ["pytest", "-q"].
            cwd: Directory to run in.
            timeout_seconds: Overrides the runner default.

        Returns:
            SuiteResult; success requires exit code 0 within the timeout.
        """
        if not command:
            return SuiteResult(success=False, error="No test command configured")

        timeout = timeout_seconds or self.timeout_seconds
        self._logger.info("Running tests: %s in %s (timeout: %ss)", " ".join(command), cwd, timeout)

        start_time = datetime.now()
        process = None

        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                cwd=str(cwd),
            )

            stdout, _ = process.communicate(timeout=timeout)
            duration = (datetime.now() - start_time).total_seconds()
            passed, failed, failures = self._parse_pytest_output(stdout or "")

            return SuiteResult(
                success=process.returncode == 0,
                returncode=process.returncode,
                duration_seconds=duration,
                output=stdout or "",
                passed=passed,
                failed=failed,
                failures=failures,
            )

        except subprocess.TimeoutExpired:
            self._logger.warning("Tests timed out after %ss, killing process", timeout)
            output = ""
            if process:
                process.terminate()
                try:
                    output, _ = process.communicate(timeout=5)
                except subprocess.TimeoutExpired:
                    process.kill()
                    self._kill_process_tree(process.pid)
                    try:
                        output, _ = process.communicate(timeout=5)
                    except subprocess.TimeoutExpired:
                        output = ""

            duration = (datetime.now() - start_time).total_seconds()
            return SuiteResult(
                success=False,
                timed_out=True,
                duration_seconds=duration,
                output=output or "",
                error=f"Tests timed out after {timeout} seconds",
            )

        except OSError as e:
            return SuiteResult(
                success=False,
                error=f"Failed to run tests: {e}",
            )

    def _kill_process_tree(self, pid: int) -> None:
        """Kill a process and all its children."""
        try:
            subprocess.run(
                ["pkill", "-P", str(pid)],
                capture_output=True,
                timeout=5,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
            pass

        try:
            os.kill(pid, signal.SIGKILL)
        except (OSError, ProcessLookupError):
            pass

    def _parse_pytest_output(self, output: str) -> tuple[int, int, list[str]]:
        """
        Pull pass/fail counts out of a pytest-style summary.

        Other runners simply report zero counts; success is decided by the
        exit code either way.
        """
        passed = 0
        failed = 0
        failures = []

        for line in output.split("\n"):
            pass_match = re.search(r"(\d+) passed", line)
            fail_match = re.search(r"(\d+) failed", line)
            if pass_match:
                passed = int(pass_match.group(1))
            if fail_match:
                failed = int(fail_match.group(1))
            if line.startswith("FAILED"):
                failures.append(line.replace("FAILED", "", 1).strip())

        return passed, failed, failures
