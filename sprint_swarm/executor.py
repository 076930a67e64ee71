"""
Work executors.

The orchestrator treats the call that actually performs a task as opaque:
anything with execute(task, context) -> ExecutionResult will do. This
module defines that interface and a Claude Code CLI implementation that
runs inside the agent's workspace:
- Prompt construction from the agent profile and task
- JSON output parsing (result text and token usage)
- Timeout handling; failures become success=False results
"""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Protocol, runtime_checkable

from sprint_swarm.models import AgentProfile, Task, TokenUsage

if TYPE_CHECKING:
    from sprint_swarm.config import SwarmConfig
    from sprint_swarm.logger import SwarmLogger


@dataclass
class AgentContext:
    """Where and as whom a task is executed."""
    agent: AgentProfile
    workspace_path: Path


@dataclass
class ExecutionResult:
    """Outcome of one executor call. usage is None when nothing was billed."""
    success: bool
    output: str = ""
    usage: Optional[TokenUsage] = None
    error: Optional[str] = None


@runtime_checkable
class WorkExecutor(Protocol):
    def execute(self, task: Task, context: AgentContext) -> ExecutionResult:
        ...


def build_system_prompt(agent: AgentProfile, workspace_path: Path) -> str:
    capabilities = ", ".join(sorted(agent.capabilities)) or "none declared"
    expertise = ", ".join(agent.expertise) or "general development"
    team = f"Team {agent.team}" if agent.team is not None else "every team"
    return (
        f"You are {agent.name}, a {agent.role} working for {team}.\n"
        f"Your expertise includes: {expertise}.\n"
        f"Your capabilities: {capabilities}.\n"
        f"Working directory: {workspace_path}\n\n"
        "Work only inside the working directory. Write tests for the code you "
        "change and leave the tree in a state where the test suite passes. Do "
        "not commit; the orchestrator commits your changes."
    )


def build_task_prompt(task: Task) -> str:
    dependencies = ", ".join(task.dependencies) or "none"
    return (
        f"Task {task.id}: {task.title}\n\n"
        f"Description:\n{task.description or '(no description)'}\n\n"
        f"Story points: {task.story_points}\n"
        f"Sprint: {task.sprint}\n"
        f"Completed dependencies: {dependencies}\n\n"
        "When finished, summarize what you implemented, which files you "
        "changed, which tests you wrote and any open questions."
    )


def parse_usage(data: dict[str, Any], model: str) -> Optional[TokenUsage]:
    """
    Convert Claude CLI usage into TokenUsage.

    The CLI reports cache reads separately from input_tokens; here they are
    folded into input_tokens and also counted as cached_tokens, which is
    the shape the cost accountant prices.
    """
    usage = data.get("usage")
    if not isinstance(usage, dict):
        return None
    cache_read = int(usage.get("cache_read_input_tokens", 0) or 0)
    cache_write = int(usage.get("cache_creation_input_tokens", 0) or 0)
    fresh = int(usage.get("input_tokens", 0) or 0)
    return TokenUsage(
        model=model,
        input_tokens=fresh + cache_read + cache_write,
        output_tokens=int(usage.get("output_tokens", 0) or 0),
        cached_tokens=cache_read,
    )


@dataclass
class ClaudeCliExecutor:
    """
    Executes tasks with the Claude Code CLI.

    Runs `claude --output-format json` in the agent workspace. A non-zero
    exit, an error subtype, unparseable output or a timeout all produce
    success=False rather than an exception.
    """

    binary: str = "claude"
    max_turns: int = 30
    timeout_seconds: int = 1800
    logger: Optional[SwarmLogger] = None

    @classmethod
    def from_config(cls, config: SwarmConfig, logger: Optional[SwarmLogger] = None) -> ClaudeCliExecutor:
        return cls(
            binary=config.executor.binary,
            max_turns=config.executor.max_turns,
            timeout_seconds=config.executor.timeout_seconds,
            logger=logger,
        )

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self.logger:
            self.logger.log(event_type, data, level=level, component="executor")

    def build_command(self, task: Task, context: AgentContext) -> list[str]:
        return [
            self.binary,
            "--print",
            "--output-format", "json",
            "--max-turns", str(self.max_turns),
            "--model", context.agent.model,
            "--append-system-prompt", build_system_prompt(context.agent, context.workspace_path),
            "--permission-mode", "acceptEdits",
            # prompts starting with dashes must not be parsed as options
            "--", build_task_prompt(task),
        ]

    def execute(self, task: Task, context: AgentContext) -> ExecutionResult:
        cmd = self.build_command(task, context)
        self._log("executor_start", {
            "task_id": task.id,
            "agent_id": context.agent.id,
            "model": context.agent.model,
            "timeout": self.timeout_seconds,
        })

        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=str(context.workspace_path),
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            self._log("executor_timeout", {"task_id": task.id, "timeout_seconds": self.timeout_seconds}, level="error")
            return ExecutionResult(
                success=False,
                error=f"Claude CLI timed out after {self.timeout_seconds} seconds",
            )
        except OSError as e:
            self._log("executor_launch_failed", {"task_id": task.id, "error": str(e)}, level="error")
            return ExecutionResult(success=False, error=f"Failed to run {self.binary}: {e}")

        try:
            data = json.loads(proc.stdout) if proc.stdout.strip() else {}
        except json.JSONDecodeError as e:
            self._log("executor_bad_output", {"task_id": task.id, "error": str(e)}, level="error")
            return ExecutionResult(
                success=False,
                output=proc.stdout[:500],
                error=f"Failed to parse Claude output as JSON: {e}",
            )

        if not isinstance(data, dict):
            data = {}
        usage = parse_usage(data, context.agent.model)
        output = str(data.get("result", ""))

        if proc.returncode != 0:
            self._log("executor_error", {
                "task_id": task.id,
                "returncode": proc.returncode,
                "stderr": proc.stderr[:500] if proc.stderr else "",
            }, level="error")
            return ExecutionResult(
                success=False,
                output=output,
                usage=usage,
                error=f"Claude CLI exited with code {proc.returncode}",
            )

        subtype = str(data.get("subtype", ""))
        if data.get("is_error") or subtype.startswith("error_"):
            self._log("executor_error_subtype", {"task_id": task.id, "subtype": subtype}, level="error")
            return ExecutionResult(
                success=False,
                output=output,
                usage=usage,
                error=f"Claude CLI returned error: {subtype or 'is_error'}",
            )

        self._log("executor_complete", {
            "task_id": task.id,
            "num_turns": data.get("num_turns", 0),
            "duration_ms": data.get("duration_ms", 0),
        })
        return ExecutionResult(success=True, output=output, usage=usage)
