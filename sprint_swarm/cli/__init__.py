"""CLI package for sprint-swarm.

Modules:
    app.py      - Main Typer app, version callback and commands
    display.py  - Rich formatting utilities (format_status, format_cost, tables)
    common.py   - Shared helpers (get_console, load_config_or_exit, get_orchestrator)

Usage:
    from sprint_swarm.cli import app, cli_main  # Main exports
"""
from sprint_swarm.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
