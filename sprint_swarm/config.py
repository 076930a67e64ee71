"""
Configuration loading and validation for Sprint Swarm.

This module handles:
- Loading swarm.yaml from the repo root
- Environment variable resolution (${VAR} syntax)
- Validation of agent profiles, merge policy and spending limits
- Default values for optional fields
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from sprint_swarm.models import AgentProfile


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


KNOWN_CAPABILITIES = frozenset({
    "code_generation",
    "code_review",
    "architecture_design",
    "testing",
    "documentation",
})


@dataclass
class GitConfig:
    """Git configuration for agent worktrees."""
    enabled: bool = True                       # Whether to give agents worktrees at all
    worktrees_root: str = ".worktrees"         # Where to create worktrees (relative to repo)
    branch_prefix: str = "worktree/"           # Agent branch is <prefix><agent_id>
    auto_commit: bool = True                   # Commit workspace changes after a task
    push: bool = False                         # Push agent branch after a task
    checkpoints: bool = True                   # Tag before/after each task
    command_timeout_seconds: int = 120         # Timeout for individual git commands


@dataclass
class TestRunnerConfig:
    """Test execution configuration."""
    command: str = ""                          # Test command (e.g., "pytest")
    args: list[str] = field(default_factory=list)  # Additional arguments
    timeout_seconds: int = 300                 # Timeout for test execution in seconds

    @property
    def argv(self) -> list[str]:
        """Full command line, or an empty list when no command is configured."""
        if not self.command:
            return []
        return shlex.split(self.command) + list(self.args)


@dataclass
class MergePolicy:
    """
    Controls the merge pipeline stages.

    An empty test_command means test stages are reported as SKIPPED.
    """
    enabled: bool = True
    pre_merge_tests: bool = True
    review_enabled: bool = False
    auto_approve_review: bool = True
    post_merge_tests: bool = True
    sync_agents: bool = True
    test_command: list[str] = field(default_factory=list)
    test_timeout_seconds: int = 300
    trunk: str = "main"
    delete_branch_after_merge: bool = False


@dataclass
class SpendingLimits:
    """Spending ceilings in USD. None disables a limit."""
    daily: Optional[float] = None
    weekly: Optional[float] = None
    monthly: Optional[float] = None
    total: Optional[float] = None
    per_task: Optional[float] = None
    per_agent: Optional[float] = None

    def configured(self) -> dict[str, float]:
        """Only the limits that are set, in evaluation order."""
        ordered = {
            "daily": self.daily,
            "weekly": self.weekly,
            "monthly": self.monthly,
            "total": self.total,
            "per_task": self.per_task,
            "per_agent": self.per_agent,
        }
        return {name: value for name, value in ordered.items() if value is not None}


@dataclass
class CostConfig:
    """Cost tracking configuration."""
    enabled: bool = True
    limits: SpendingLimits = field(default_factory=SpendingLimits)


@dataclass
class ExecutorConfig:
    """Claude Code CLI configuration for the work executor."""
    binary: str = "claude"                     # Path to claude binary
    max_turns: int = 30                        # Maximum conversation turns
    timeout_seconds: int = 1800                # Command timeout in seconds
    default_model: str = "claude-sonnet-4-5"


@dataclass
class SchedulerConfig:
    """Sprint dispatch configuration."""
    max_parallel: int = 4                      # Worker threads for run_sprint
    auto_execute: bool = True                  # Execute tasks right after assigning them


@dataclass
class SwarmConfig:
    """
    Main configuration for Sprint Swarm.

    This is the top-level config loaded from swarm.yaml.
    """
    # Paths
    repo_root: str = "."
    swarm_dir: str = ".swarm"
    trunk: str = "main"

    # Nested configurations
    git: GitConfig = field(default_factory=GitConfig)
    tests: TestRunnerConfig = field(default_factory=TestRunnerConfig)
    merge: MergePolicy = field(default_factory=MergePolicy)
    costs: CostConfig = field(default_factory=CostConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    agents: list[AgentProfile] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def swarm_path(self) -> Path:
        """Absolute path to .swarm directory."""
        return Path(self.repo_root) / self.swarm_dir

    @property
    def state_path(self) -> Path:
        """Absolute path to state directory (tasks.json, epics.json, usage.json)."""
        return self.swarm_path / "state"

    @property
    def logs_path(self) -> Path:
        """Absolute path to logs directory."""
        return self.swarm_path / "logs"

    @property
    def worktrees_path(self) -> Path:
        """Absolute path to the agent worktrees root."""
        return Path(self.repo_root) / self.git.worktrees_root

    def get_agent(self, agent_id: str) -> Optional[AgentProfile]:
        for agent in self.agents:
            if agent.id == agent_id:
                return agent
        return None


# Module-level cache for the loaded configuration
_config_cache: Optional[SwarmConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _parse_git_config(data: dict[str, Any]) -> GitConfig:
    """Parse git configuration from dict."""
    return GitConfig(
        enabled=data.get("enabled", True),
        worktrees_root=data.get("worktrees_root", ".worktrees"),
        branch_prefix=data.get("branch_prefix", "worktree/"),
        auto_commit=data.get("auto_commit", True),
        push=data.get("push", False),
        checkpoints=data.get("checkpoints", True),
        command_timeout_seconds=data.get("command_timeout_seconds", 120),
    )


def _parse_tests_config(data: dict[str, Any]) -> TestRunnerConfig:
    """Parse tests configuration from dict."""
    return TestRunnerConfig(
        command=data.get("command", ""),
        args=list(data.get("args", [])),
        timeout_seconds=data.get("timeout_seconds", 300),
    )


def _parse_merge_policy(
    data: dict[str, Any],
    tests: TestRunnerConfig,
    trunk: str,
) -> MergePolicy:
    """Parse merge policy, falling back to the tests section for the command."""
    if data.get("trunk", trunk) != trunk:
        raise ConfigError(
            f"merge.trunk ({data['trunk']}) must match the top-level trunk ({trunk}); "
            "worktrees branch from and merge into the same branch"
        )

    raw_command = data.get("test_command")
    if raw_command is None:
        test_command = tests.argv
    elif isinstance(raw_command, str):
        test_command = shlex.split(raw_command)
    else:
        test_command = [str(part) for part in raw_command]

    policy = MergePolicy(
        enabled=data.get("enabled", True),
        pre_merge_tests=data.get("pre_merge_tests", True),
        review_enabled=data.get("review_enabled", False),
        auto_approve_review=data.get("auto_approve_review", True),
        post_merge_tests=data.get("post_merge_tests", True),
        sync_agents=data.get("sync_agents", True),
        test_command=test_command,
        test_timeout_seconds=data.get("test_timeout_seconds", tests.timeout_seconds),
        trunk=trunk,
        delete_branch_after_merge=data.get("delete_branch_after_merge", False),
    )
    if policy.test_timeout_seconds <= 0:
        raise ConfigError("merge.test_timeout_seconds must be positive")
    return policy


def _parse_spending_limits(data: dict[str, Any]) -> SpendingLimits:
    """Parse spending limits; every limit must be a positive number or absent."""
    values: dict[str, Optional[float]] = {}
    for name in ("daily", "weekly", "monthly", "total", "per_task", "per_agent"):
        raw = data.get(name)
        if raw is None:
            values[name] = None
            continue
        try:
            amount = float(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"costs.limits.{name} must be a number, got {raw!r}")
        if amount <= 0:
            raise ConfigError(f"costs.limits.{name} must be positive")
        values[name] = amount
    return SpendingLimits(**values)


def _parse_cost_config(data: dict[str, Any]) -> CostConfig:
    """Parse cost configuration from dict."""
    return CostConfig(
        enabled=data.get("enabled", True),
        limits=_parse_spending_limits(data.get("limits", {}) or {}),
    )


def _parse_executor_config(data: dict[str, Any]) -> ExecutorConfig:
    """Parse executor configuration from dict."""
    return ExecutorConfig(
        binary=data.get("binary", "claude"),
        max_turns=data.get("max_turns", 30),
        timeout_seconds=data.get("timeout_seconds", 1800),
        default_model=data.get("default_model", "claude-sonnet-4-5"),
    )


def _parse_scheduler_config(data: dict[str, Any]) -> SchedulerConfig:
    """Parse scheduler configuration from dict."""
    max_parallel = data.get("max_parallel", 4)
    if max_parallel < 1:
        raise ConfigError("scheduler.max_parallel must be at least 1")
    return SchedulerConfig(
        max_parallel=max_parallel,
        auto_execute=data.get("auto_execute", True),
    )


def _parse_agent(data: dict[str, Any], default_model: str) -> AgentProfile:
    """Parse a single agent profile."""
    agent_id = data.get("id")
    if not agent_id:
        raise ConfigError("agents[].id is required")

    capabilities = frozenset(data.get("capabilities", []))
    unknown = capabilities - KNOWN_CAPABILITIES
    if unknown:
        raise ConfigError(
            f"Agent '{agent_id}' has unknown capabilities: {', '.join(sorted(unknown))}"
        )

    max_concurrent = data.get("max_concurrent_tasks", 1)
    if max_concurrent < 1:
        raise ConfigError(f"Agent '{agent_id}': max_concurrent_tasks must be at least 1")

    return AgentProfile(
        id=agent_id,
        name=data.get("name", agent_id),
        role=data.get("role", "developer"),
        team=data.get("team"),
        expertise=list(data.get("expertise", [])),
        capabilities=capabilities,
        max_concurrent_tasks=max_concurrent,
        sprint_capacity=data.get("sprint_capacity"),
        model=data.get("model", default_model),
    )


def _parse_agents(data: list[dict[str, Any]], default_model: str) -> list[AgentProfile]:
    """Parse the agent roster, rejecting duplicate ids."""
    agents = [_parse_agent(entry, default_model) for entry in data]
    seen: set[str] = set()
    for agent in agents:
        if agent.id in seen:
            raise ConfigError(f"Duplicate agent id: {agent.id}")
        seen.add(agent.id)
    return agents


def parse_config(data: dict[str, Any]) -> SwarmConfig:
    """
    Build a SwarmConfig from an already-loaded mapping.

    Raises:
        ConfigError: If any section is invalid.
    """
    data = _resolve_env_vars(data)

    trunk = data.get("trunk", "main")
    tests_config = _parse_tests_config(data.get("tests", {}) or {})
    executor_config = _parse_executor_config(data.get("executor", {}) or {})
    merge_policy = _parse_merge_policy(data.get("merge", {}) or {}, tests_config, trunk)

    return SwarmConfig(
        repo_root=data.get("repo_root", "."),
        swarm_dir=data.get("swarm_dir", ".swarm"),
        trunk=trunk,
        git=_parse_git_config(data.get("git", {}) or {}),
        tests=tests_config,
        merge=merge_policy,
        costs=_parse_cost_config(data.get("costs", {}) or {}),
        executor=executor_config,
        scheduler=_parse_scheduler_config(data.get("scheduler", {}) or {}),
        agents=_parse_agents(data.get("agents", []) or [], executor_config.default_model),
    )


def load_config(config_path: Optional[str] = None) -> SwarmConfig:
    """
    Load configuration from swarm.yaml.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for swarm.yaml in current directory.

    Returns:
        SwarmConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    if config_path is None:
        config_path = "swarm.yaml"

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if not raw_data:
        raise ConfigError("Configuration file is empty")

    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    return parse_config(raw_data)


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> SwarmConfig:
    """
    Get the cached configuration, loading it if necessary.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
