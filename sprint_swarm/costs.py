"""
Token cost accounting and spending limits.

Every work-executor call is recorded as an immutable UsageRecord. Cost is
derived from the pricing table at query time, so a pricing change re-prices
history. After each record the configured limits are evaluated; the first
limit reached fires every alert callback and then raises
SpendingLimitExceededError.
"""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from sprint_swarm.config import SpendingLimits
from sprint_swarm.errors import SpendingLimitExceededError, SwarmError
from sprint_swarm.models import CostBreakdown, UsageRecord, model_to_json, utc_now
from sprint_swarm.utils.fs import FileSystemError, file_exists, read_file, safe_write

if TYPE_CHECKING:
    from sprint_swarm.logger import SwarmLogger


USAGE_FILE = "usage.json"
PER_MILLION = 1_000_000


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""
    input: float
    output: float
    cached_input: float


# Keyed by model family; the cached rate is a 90% discount on input.
MODEL_PRICING: dict[str, ModelPricing] = {
    "opus": ModelPricing(input=15.0, output=75.0, cached_input=1.5),
    "sonnet": ModelPricing(input=3.0, output=15.0, cached_input=0.3),
    "haiku": ModelPricing(input=0.25, output=1.25, cached_input=0.025),
}
DEFAULT_FAMILY = "sonnet"

AlertCallback = Callable[[str, float, float], None]


def model_family(model: str) -> str:
    """Normalize a model id to a pricing family by substring. Unknown models price as sonnet."""
    lowered = model.lower()
    for family in MODEL_PRICING:
        if family in lowered:
            return family
    return DEFAULT_FAMILY


def get_pricing(model: str) -> ModelPricing:
    return MODEL_PRICING[model_family(model)]


def calculate_cost(record: UsageRecord) -> CostBreakdown:
    """Price one usage record."""
    pricing = get_pricing(record.model)
    regular_input = max(0, record.input_tokens - record.cached_tokens)

    input_cost = regular_input / PER_MILLION * pricing.input
    cache_cost = record.cached_tokens / PER_MILLION * pricing.cached_input
    output_cost = record.output_tokens / PER_MILLION * pricing.output
    cost_saved = record.cached_tokens / PER_MILLION * pricing.input - cache_cost

    return CostBreakdown(
        input_cost=input_cost,
        cache_cost=cache_cost,
        output_cost=output_cost,
        total_cost=input_cost + cache_cost + output_cost,
        tokens_saved=record.cached_tokens,
        cost_saved=cost_saved,
    )


@dataclass
class TokenTotals:
    input: int = 0
    output: int = 0
    cached: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output

    def to_dict(self) -> dict[str, int]:
        return {"input": self.input, "output": self.output, "cached": self.cached, "total": self.total}


@dataclass
class CostSummary:
    total_cost: float = 0.0
    tokens: TokenTotals = field(default_factory=TokenTotals)
    cache_efficiency: float = 0.0        # percent of input tokens served from cache
    cache_savings: float = 0.0
    average_cost_per_request: float = 0.0
    request_count: int = 0
    cost_by_agent: dict[str, float] = field(default_factory=dict)
    cost_by_model: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["tokens"] = self.tokens.to_dict()
        return data


@dataclass
class LimitStatus:
    """Current spend against one configured limit."""
    name: str
    current: float
    threshold: float

    @property
    def exceeded(self) -> bool:
        return self.current >= self.threshold


class CostAccountant:
    """
    Records usage, answers cost queries and enforces spending limits.

    Append, persist and limit evaluation happen under one lock so two
    concurrent calls cannot both slip under a limit.
    """

    def __init__(
        self,
        state_dir: str | Path,
        limits: Optional[SpendingLimits] = None,
        logger: Optional[SwarmLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Args:
            state_dir: Directory for usage.json.
            limits: Spending limits; None means unlimited.
            logger: Optional logger for recording operations.
            clock: Returns the current aware datetime. Defaults to UTC now.
        """
        self._state_dir = Path(state_dir)
        self._limits = limits or SpendingLimits()
        self._logger = logger
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._alert_callbacks: list[AlertCallback] = []
        self._usage: list[UsageRecord] = self._load()

    @property
    def usage_path(self) -> Path:
        return self._state_dir / USAGE_FILE

    @property
    def limits(self) -> SpendingLimits:
        return self._limits

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level, component="costs")

    # Persistence

    def _load(self) -> list[UsageRecord]:
        if not file_exists(self.usage_path):
            return []
        try:
            data = json.loads(read_file(self.usage_path))
            return [UsageRecord.from_dict(entry) for entry in data]
        except (json.JSONDecodeError, FileSystemError, KeyError, ValueError, TypeError) as e:
            self._log("usage_load_failed", {"path": str(self.usage_path), "error": str(e)}, level="error")
            return []

    def _save(self) -> None:
        try:
            safe_write(self.usage_path, model_to_json([r.to_dict() for r in self._usage], indent=2))
        except FileSystemError as e:
            self._log("usage_save_error", {"error": str(e)}, level="error")
            raise SwarmError(f"Failed to save usage history: {e}")

    # Recording

    def calculate_cost(self, record: UsageRecord) -> CostBreakdown:
        return calculate_cost(record)

    def record(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cached_tokens: int,
        agent_id: str,
        task_id: Optional[str] = None,
    ) -> CostBreakdown:
        """
        Append a usage record, persist it and enforce limits.

        Raises:
            SpendingLimitExceededError: A limit has been reached. The record
                that tripped it is kept; calls made while the limit is still
                reached are refused before anything is appended.
        """
        if min(input_tokens, output_tokens, cached_tokens) < 0:
            raise ValueError("Token counts must not be negative")

        with self._lock:
            # Once a limit is reached, later calls are refused without appending
            self._enforce(agent_id=agent_id, task_id=task_id)

            record = UsageRecord(
                timestamp=self._clock(),
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cached_tokens=cached_tokens,
                agent_id=agent_id,
                task_id=task_id,
            )
            self._usage.append(record)
            self._save()

            cost = calculate_cost(record)
            self._log("usage_recorded", {
                "agent_id": agent_id,
                "task_id": task_id,
                "model": model,
                "cost": round(cost.total_cost, 6),
            }, level="debug")

            self._enforce(agent_id=agent_id, task_id=task_id)
            return cost

    def on_alert(self, callback: AlertCallback) -> None:
        """Register callback(message, current, threshold), fired before a limit raises."""
        self._alert_callbacks.append(callback)

    # Limits

    def _window_starts(self) -> dict[str, datetime]:
        now = self._clock().astimezone()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        # weekday(): Monday=0 .. Sunday=6; weeks start on Sunday
        start_of_week = start_of_day - timedelta(days=(start_of_day.weekday() + 1) % 7)
        start_of_month = start_of_day.replace(day=1)
        return {"daily": start_of_day, "weekly": start_of_week, "monthly": start_of_month}

    def limit_statuses(
        self,
        agent_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> list[LimitStatus]:
        """Spend against each configured limit. per_task/per_agent need the matching id."""
        with self._lock:
            windows = self._window_starts()
            statuses = []
            for name, threshold in self._limits.configured().items():
                if name in windows:
                    current = self.get_total_cost(since=windows[name])
                elif name == "total":
                    current = self.get_total_cost()
                elif name == "per_task":
                    if task_id is None:
                        continue
                    current = self.get_cost_by_task(task_id)
                else:
                    if agent_id is None:
                        continue
                    current = self.get_cost_by_agent(agent_id)
                statuses.append(LimitStatus(name, current, threshold))
            return statuses

    def _first_exceeded(
        self,
        agent_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> Optional[LimitStatus]:
        for status in self.limit_statuses(agent_id=agent_id, task_id=task_id):
            if status.exceeded:
                return status
        return None

    def _enforce(self, agent_id: Optional[str] = None, task_id: Optional[str] = None) -> None:
        exceeded = self._first_exceeded(agent_id=agent_id, task_id=task_id)
        if exceeded is None:
            return

        label = exceeded.name.replace("_", "-").capitalize()
        message = (
            f"{label} spending limit reached: "
            f"${exceeded.current:.2f} / ${exceeded.threshold:.2f}"
        )
        self._log("spending_limit_reached", {
            "limit": exceeded.name,
            "current": exceeded.current,
            "threshold": exceeded.threshold,
            "agent_id": agent_id,
            "task_id": task_id,
        }, level="error")

        for callback in list(self._alert_callbacks):
            try:
                callback(message, exceeded.current, exceeded.threshold)
            except Exception as e:
                self._log("alert_callback_failed", {"error": str(e)}, level="error")

        raise SpendingLimitExceededError(exceeded.name, exceeded.current, exceeded.threshold)

    def check_limits(self, agent_id: Optional[str] = None, task_id: Optional[str] = None) -> None:
        """Raise (after alerting) if any limit is reached, without recording."""
        with self._lock:
            self._enforce(agent_id=agent_id, task_id=task_id)

    def is_over_limit(self, agent_id: Optional[str] = None, task_id: Optional[str] = None) -> bool:
        """True if any limit is reached. Fires no alerts."""
        with self._lock:
            return self._first_exceeded(agent_id=agent_id, task_id=task_id) is not None

    def update_limits(self, **limits: Optional[float]) -> SpendingLimits:
        """Change individual limits; None clears one."""
        known = {f.name for f in fields(SpendingLimits)}
        unknown = set(limits) - known
        if unknown:
            raise ValueError(f"Unknown spending limits: {', '.join(sorted(unknown))}")
        for name, value in limits.items():
            if value is not None and value <= 0:
                raise ValueError(f"Spending limit {name} must be positive")

        with self._lock:
            current = asdict(self._limits)
            current.update(limits)
            self._limits = SpendingLimits(**current)
            self._log("spending_limits_updated", {"limits": self._limits.configured()})
            return self._limits

    def reset(self) -> None:
        """Drop all usage history."""
        with self._lock:
            self._usage = []
            self._save()
            self._log("usage_reset", {}, level="warn")

    # Queries

    def _records(self, since: Optional[datetime] = None) -> list[UsageRecord]:
        with self._lock:
            if since is None:
                return list(self._usage)
            return [r for r in self._usage if r.timestamp >= since]

    def _sum_cost(self, records: Iterable[UsageRecord]) -> float:
        return sum(calculate_cost(r).total_cost for r in records)

    def get_total_cost(self, since: Optional[datetime] = None) -> float:
        return self._sum_cost(self._records(since))

    def get_cost_by_agent(self, agent_id: str, since: Optional[datetime] = None) -> float:
        return self._sum_cost(r for r in self._records(since) if r.agent_id == agent_id)

    def get_cost_by_task(self, task_id: str) -> float:
        return self._sum_cost(r for r in self._records() if r.task_id == task_id)

    def get_total_tokens(self, since: Optional[datetime] = None) -> TokenTotals:
        totals = TokenTotals()
        for record in self._records(since):
            totals.input += record.input_tokens
            totals.output += record.output_tokens
            totals.cached += record.cached_tokens
        return totals

    def get_cache_efficiency(self, since: Optional[datetime] = None) -> float:
        """Cached tokens as a percentage of input tokens."""
        tokens = self.get_total_tokens(since)
        if tokens.input == 0:
            return 0.0
        return tokens.cached / tokens.input * 100

    def get_cache_savings(self, since: Optional[datetime] = None) -> float:
        return sum(calculate_cost(r).cost_saved for r in self._records(since))

    def get_summary(self, since: Optional[datetime] = None) -> CostSummary:
        records = self._records(since)
        summary = CostSummary(request_count=len(records))
        for record in records:
            cost = calculate_cost(record)
            summary.total_cost += cost.total_cost
            summary.cache_savings += cost.cost_saved
            summary.tokens.input += record.input_tokens
            summary.tokens.output += record.output_tokens
            summary.tokens.cached += record.cached_tokens
            summary.cost_by_agent[record.agent_id] = (
                summary.cost_by_agent.get(record.agent_id, 0.0) + cost.total_cost
            )
            family = model_family(record.model)
            summary.cost_by_model[family] = summary.cost_by_model.get(family, 0.0) + cost.total_cost

        if summary.tokens.input:
            summary.cache_efficiency = summary.tokens.cached / summary.tokens.input * 100
        if records:
            summary.average_cost_per_request = summary.total_cost / len(records)
        return summary

    def export_usage(self, since: Optional[datetime] = None) -> list[UsageRecord]:
        return self._records(since)
