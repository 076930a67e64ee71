"""Shared fixtures for sprint-swarm tests."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest
from typer.testing import CliRunner

from sprint_swarm.config import SwarmConfig, clear_config_cache
from sprint_swarm.logger import clear_logger_cache
from sprint_swarm.models import AgentProfile


def git(repo: Path, *args: str) -> str:
    """Run git in repo and return stripped stdout; fails the test on error."""
    result = subprocess.run(
        ["git", *args],
        cwd=str(repo),
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str = "") -> str:
    """Write a file, commit it and return the new HEAD hash."""
    (repo / name).write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-m", message or f"Add {name}")
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture(autouse=True)
def clear_caches():
    """Module-level caches must not leak between tests."""
    clear_config_cache()
    clear_logger_cache()
    yield
    clear_config_cache()
    clear_logger_cache()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A throwaway repository on branch main with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.email", "dev@example.com")
    git(repo, "config", "user.name", "Dev")
    git(repo, "config", "commit.gpgsign", "false")
    git(repo, "config", "tag.gpgsign", "false")
    commit_file(repo, "README.md", "# demo\n", "Initial commit")
    return repo


@pytest.fixture
def agent_profiles() -> list[AgentProfile]:
    """Two team-1 developers, one architect and one team-2 developer."""
    return [
        AgentProfile(
            id="alice",
            team=1,
            expertise=["api", "backend"],
            capabilities=frozenset({"code_generation", "testing"}),
        ),
        AgentProfile(
            id="bob",
            team=1,
            expertise=["frontend", "ui"],
            capabilities=frozenset({"code_generation"}),
        ),
        AgentProfile(
            id="carol",
            role="architect",
            team=1,
            expertise=["architecture"],
            capabilities=frozenset({"architecture_design", "code_review"}),
        ),
        AgentProfile(
            id="dave",
            team=2,
            expertise=["data"],
            capabilities=frozenset({"code_generation"}),
        ),
    ]


@pytest.fixture
def swarm_config(git_repo: Path, agent_profiles: list[AgentProfile]) -> SwarmConfig:
    """Config rooted at git_repo with merge test stages disabled."""
    config = SwarmConfig(repo_root=str(git_repo), agents=agent_profiles)
    config.merge.pre_merge_tests = False
    config.merge.post_merge_tests = False
    return config


@pytest.fixture
def cli_runner() -> CliRunner:
    """Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def run_git():
    """The git() helper, for tests that drive the repository directly."""
    return git


@pytest.fixture
def commit(git_repo: Path):
    """commit(name, content, message='') on git_repo's current branch."""
    def _commit(name: str, content: str, message: str = "", repo: Path = git_repo) -> str:
        return commit_file(repo, name, content, message)
    return _commit
