"""
Structured JSONL logging for Sprint Swarm.

This module provides:
- JSONL event logging for debugging and audit trails
- Log files organized by logger name and date
- Log levels (debug, info, warn, error)
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from sprint_swarm.config import SwarmConfig, get_config


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class SwarmLogger:
    """
    JSONL event logger for Sprint Swarm.

    Writes structured log entries to .swarm/logs/<name>-YYYY-MM-DD.jsonl

    Each log entry is a JSON object with:
    - timestamp: ISO format timestamp
    - level: Log level (debug, info, warn, error)
    - event_type: Type of event being logged
    - component: Component that emitted the event (ledger, merge, ...)
    - data: Additional event data (dict)

    Safe to share between worker threads.
    """

    def __init__(self, name: str = "swarm", config: Optional[SwarmConfig] = None) -> None:
        """
        Initialize logger.

        Args:
            name: Log file prefix.
            config: Optional config to use. If not provided, loads from swarm.yaml.
        """
        self.name = name
        self._config = config
        self._lock = threading.Lock()

    @property
    def config(self) -> SwarmConfig:
        """Get configuration (lazy load)."""
        if self._config is None:
            self._config = get_config()
        return self._config

    def _get_log_path(self) -> Path:
        """Get the log file path for today."""
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.config.logs_path / f"{self.name}-{today}.jsonl"

    def _write_entry(self, entry: dict[str, Any]) -> None:
        """Append a log entry to the JSONL file."""
        log_path = self._get_log_path()
        with self._lock:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
        component: str = "",
    ) -> None:
        """
        Log an event.

        Args:
            event_type: Type of event (e.g., "task_assigned", "merge_completed").
            data: Additional data to include in the log entry.
            level: Log level (debug, info, warn, error).
            component: Emitting component name.
        """
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "component": component,
            "data": data or {},
        }
        self._write_entry(entry)

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log a debug event."""
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log an info event."""
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log a warning event."""
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log an error event."""
        self.log(event_type, data, LogLevel.ERROR)

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        component: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read log entries with optional filtering.

        Args:
            date: Date string (YYYY-MM-DD) to read. If None, reads today's logs.
            level: Filter by log level.
            event_type: Filter by event type.
            component: Filter by emitting component.
            limit: Maximum number of entries to return.

        Returns:
            List of log entries matching the filters.
        """
        if date is None:
            date = datetime.now(timezone.utc).strftime("%Y-%m-%d")

        log_path = self.config.logs_path / f"{self.name}-{date}.jsonl"
        if not log_path.exists():
            return []

        entries = []
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue

                if level and entry.get("level") != level:
                    continue
                if event_type and entry.get("event_type") != event_type:
                    continue
                if component and entry.get("component") != component:
                    continue

                entries.append(entry)

                if limit and len(entries) >= limit:
                    break

        return entries


# Module-level logger cache
_logger_cache: dict[str, SwarmLogger] = {}


def get_logger(name: str = "swarm", config: Optional[SwarmConfig] = None) -> SwarmLogger:
    """Get or create a logger by name."""
    if name not in _logger_cache:
        _logger_cache[name] = SwarmLogger(name, config)
    return _logger_cache[name]


def clear_logger_cache() -> None:
    """Clear the logger cache. Useful for testing."""
    global _logger_cache
    _logger_cache = {}
