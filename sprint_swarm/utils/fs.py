"""
File system helpers for Sprint Swarm.

Snapshots (tasks, epics, usage history) are rewritten in full on every
mutation, so writes go through a temp file in the same directory followed by
an atomic replace. A crash mid-write leaves the previous snapshot intact.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path


class FileSystemError(Exception):
    """Raised when a file system operation fails."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """
    Create a directory (and parents) if it does not exist.

    Raises:
        FileSystemError: If the directory cannot be created.
    """
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except OSError as e:
        raise FileSystemError(f"Failed to create directory {path}: {e}")


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Write content to a file atomically.

    Args:
        path: Destination file.
        content: Text to write.
        encoding: Character encoding. Defaults to utf-8.

    Raises:
        FileSystemError: If the write or the final replace fails.
    """
    path = Path(path)
    ensure_dir(path.parent)

    try:
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding=encoding) as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
    except OSError as e:
        raise FileSystemError(f"Failed to write file {path}: {e}")


def read_file(path: str | Path, encoding: str = "utf-8") -> str:
    """
    Read a text file.

    Raises:
        FileSystemError: If the file is missing, not a file, or unreadable.
    """
    path = Path(path)

    if not path.is_file():
        raise FileSystemError(f"File not found: {path}")

    try:
        return path.read_text(encoding=encoding)
    except UnicodeDecodeError as e:
        raise FileSystemError(f"Failed to decode file {path} with encoding {encoding}: {e}")
    except OSError as e:
        raise FileSystemError(f"Failed to read file {path}: {e}")


def file_exists(path: str | Path) -> bool:
    """Return True if path exists and is a regular file."""
    return Path(path).is_file()


def force_remove_dir(path: str | Path) -> bool:
    """
    Best-effort recursive delete of a directory.

    Never raises. Returns True if the directory is gone afterwards.
    """
    path = Path(path)
    if not path.exists():
        return True
    shutil.rmtree(path, ignore_errors=True)
    return not path.exists()
