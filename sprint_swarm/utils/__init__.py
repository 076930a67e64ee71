"""Utility modules for Sprint Swarm."""

from sprint_swarm.utils.fs import (
    FileSystemError,
    ensure_dir,
    file_exists,
    force_remove_dir,
    read_file,
    safe_write,
)

__all__ = [
    "FileSystemError",
    "ensure_dir",
    "file_exists",
    "force_remove_dir",
    "read_file",
    "safe_write",
]
