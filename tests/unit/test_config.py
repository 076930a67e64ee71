"""Tests for swarm.yaml loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from sprint_swarm.config import (
    ConfigError,
    SwarmConfig,
    clear_config_cache,
    get_config,
    load_config,
    parse_config,
)


MINIMAL_YAML = """\
repo_root: {repo}
agents:
  - id: alice
    team: 1
    expertise: [api, backend]
    capabilities: [code_generation, testing]
"""


def write_config(path: Path, content: str) -> Path:
    config_file = path / "swarm.yaml"
    config_file.write_text(content)
    return config_file


class TestDefaults:

    def test_empty_mapping_gets_defaults(self):
        config = parse_config({})
        assert config.trunk == "main"
        assert config.git.worktrees_root == ".worktrees"
        assert config.merge.enabled
        assert config.merge.test_command == []
        assert config.costs.limits.configured() == {}
        assert config.scheduler.max_parallel == 4
        assert config.agents == []

    def test_paths_derive_from_repo_root(self, tmp_path):
        config = SwarmConfig(repo_root=str(tmp_path))
        assert config.state_path == tmp_path / ".swarm" / "state"
        assert config.worktrees_path == tmp_path / ".worktrees"

    def test_agent_defaults(self):
        config = parse_config({"executor": {"default_model": "claude-opus-4-1"}, "agents": [{"id": "a"}]})
        agent = config.get_agent("a")
        assert agent.name == "a"
        assert agent.role == "developer"
        assert agent.team is None
        assert agent.max_concurrent_tasks == 1
        assert agent.model == "claude-opus-4-1"
        assert config.get_agent("missing") is None


class TestMergeSection:

    def test_test_command_falls_back_to_tests_section(self):
        config = parse_config({"tests": {"command": "pytest -q", "args": ["tests/"], "timeout_seconds": 60}})
        assert config.merge.test_command == ["pytest", "-q", "tests/"]
        assert config.merge.test_timeout_seconds == 60

    def test_string_test_command_is_split(self):
        config = parse_config({"merge": {"test_command": "make test"}})
        assert config.merge.test_command == ["make", "test"]

    def test_trunk_is_inherited(self):
        assert parse_config({"trunk": "develop"}).merge.trunk == "develop"

    def test_matching_merge_trunk_accepted(self):
        config = parse_config({"trunk": "develop", "merge": {"trunk": "develop"}})
        assert config.merge.trunk == "develop"

    def test_diverging_merge_trunk_rejected(self):
        with pytest.raises(ConfigError, match="merge.trunk"):
            parse_config({"trunk": "main", "merge": {"trunk": "release"}})

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ConfigError):
            parse_config({"merge": {"test_timeout_seconds": 0}})


class TestValidation:

    def test_unknown_capability_rejected(self):
        with pytest.raises(ConfigError, match="unknown capabilities"):
            parse_config({"agents": [{"id": "a", "capabilities": ["telepathy"]}]})

    def test_duplicate_agent_rejected(self):
        with pytest.raises(ConfigError, match="Duplicate agent id"):
            parse_config({"agents": [{"id": "a"}, {"id": "a"}]})

    def test_missing_agent_id_rejected(self):
        with pytest.raises(ConfigError):
            parse_config({"agents": [{"team": 1}]})

    def test_zero_concurrency_rejected(self):
        with pytest.raises(ConfigError):
            parse_config({"agents": [{"id": "a", "max_concurrent_tasks": 0}]})

    @pytest.mark.parametrize("value", [0, -5, "lots"])
    def test_bad_spending_limit_rejected(self, value):
        with pytest.raises(ConfigError):
            parse_config({"costs": {"limits": {"daily": value}}})

    def test_spending_limits_parsed(self):
        config = parse_config({"costs": {"limits": {"daily": 10, "per_task": "2.5"}}})
        assert config.costs.limits.configured() == {"daily": 10.0, "per_task": 2.5}

    def test_max_parallel_must_be_positive(self):
        with pytest.raises(ConfigError):
            parse_config({"scheduler": {"max_parallel": 0}})


class TestEnvironmentVariables:

    def test_variables_substituted(self, monkeypatch):
        monkeypatch.setenv("SWARM_CLAUDE_BIN", "/opt/claude")
        config = parse_config({"executor": {"binary": "${SWARM_CLAUDE_BIN}"}})
        assert config.executor.binary == "/opt/claude"

    def test_unset_variable_is_an_error(self, monkeypatch):
        monkeypatch.delenv("SWARM_NOT_SET", raising=False)
        with pytest.raises(ConfigError, match="SWARM_NOT_SET"):
            parse_config({"executor": {"binary": "${SWARM_NOT_SET}"}})


class TestLoadConfig:

    def test_loads_yaml_file(self, tmp_path):
        config_file = write_config(tmp_path, MINIMAL_YAML.format(repo=tmp_path))
        config = load_config(str(config_file))
        assert config.repo_root == str(tmp_path)
        assert config.agents[0].expertise == ["api", "backend"]
        assert config.agents[0].capabilities == frozenset({"code_generation", "testing"})

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "nope.yaml"))

    def test_empty_file(self, tmp_path):
        with pytest.raises(ConfigError, match="empty"):
            load_config(str(write_config(tmp_path, "")))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(str(write_config(tmp_path, "agents: [unclosed")))

    def test_non_mapping(self, tmp_path):
        with pytest.raises(ConfigError, match="mapping"):
            load_config(str(write_config(tmp_path, "- just\n- a list\n")))

    def test_get_config_caches(self, tmp_path):
        config_file = write_config(tmp_path, MINIMAL_YAML.format(repo=tmp_path))
        first = get_config(str(config_file))
        assert get_config(str(config_file)) is first
        clear_config_cache()
        assert get_config(str(config_file)) is not first
