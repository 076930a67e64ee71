"""Common utilities and global state for the CLI.

Contains project directory management, config loading and orchestrator
construction. This module should NOT import from app.py to avoid circular
imports.
"""
from __future__ import annotations

import os
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console

if TYPE_CHECKING:
    from sprint_swarm.config import SwarmConfig
    from sprint_swarm.orchestrator import Orchestrator

# ============================================================================
# Global State
# ============================================================================

# Global project directory override (set via --project flag)
_project_dir: Optional[str] = None

# Config file override (set via --config flag)
_config_path: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_project_dir() -> Optional[str]:
    """Get the project directory override if set."""
    return _project_dir


def set_project_dir(path: Optional[str]) -> None:
    """Set the project directory override."""
    global _project_dir
    _project_dir = path


def set_config_path(path: Optional[str]) -> None:
    global _config_path
    _config_path = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Config / Orchestrator Helpers
# ============================================================================


def load_config_or_exit() -> "SwarmConfig":
    """
    Load swarm.yaml from the project directory.

    Prints the error and exits with status 1 when the file is missing or
    invalid; every command needs the agent roster, so there is no default.
    """
    from sprint_swarm.config import ConfigError, load_config

    project_dir = get_project_dir()
    if project_dir:
        os.chdir(project_dir)

    try:
        return load_config(_config_path)
    except ConfigError as e:
        get_console().print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)


def init_swarm_directory(config: "SwarmConfig") -> None:
    """Initialize the .swarm directory structure if it doesn't exist."""
    from sprint_swarm.utils.fs import ensure_dir

    ensure_dir(config.swarm_path)
    ensure_dir(config.state_path)
    ensure_dir(config.logs_path)


def get_orchestrator() -> "Orchestrator":
    """Build an orchestrator wired to the project's configuration and event log."""
    from sprint_swarm.logger import SwarmLogger
    from sprint_swarm.orchestrator import Orchestrator

    config = load_config_or_exit()
    init_swarm_directory(config)
    return Orchestrator.from_config(config, logger=SwarmLogger(config=config))
