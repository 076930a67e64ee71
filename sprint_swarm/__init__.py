"""
Sprint Swarm - multi-agent sprint orchestration over a shared git repository.

Tracks tasks and epics, assigns ready work to a pool of agents, isolates each
agent in its own git worktree, merges finished work behind a test gate and
keeps spending under configured limits.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
