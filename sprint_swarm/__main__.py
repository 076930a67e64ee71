"""
Entry point for running sprint_swarm as a module.

Allows running as: python -m sprint_swarm
"""

from sprint_swarm.cli import cli_main

if __name__ == "__main__":
    cli_main()
