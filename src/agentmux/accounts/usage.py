"""Usage sources — rolling-window token totals and the throttle event log.

The registry and throttle handler only depend on the :class:`UsageProvider`
protocol. :class:`InMemoryUsageStore` is the implementation used by the
service facade and tests; a persistent stats store can stand in for it.
"""

from __future__ import annotations

import datetime
import time
from dataclasses import dataclass, field
from typing import Protocol

from agentmux.process.types import UsageStats


@dataclass
class WindowUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    cost_usd: float = 0.0
    query_count: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_creation_tokens
        )


@dataclass
class ThrottleEvent:
    account_id: str
    session_id: str | None
    reason: str
    tokens_at_throttle: int
    window_start: float
    window_end: float
    timestamp: float = field(default_factory=time.time)


class UsageProvider(Protocol):
    def get_account_usage_in_window(
        self, account_id: str, window_start: float, window_end: float
    ) -> WindowUsage: ...

    def insert_throttle_event(self, event: ThrottleEvent) -> None: ...


def window_bounds(window_s: float, now: float | None = None) -> tuple[float, float]:
    """Current usage window, aligned to fixed slots counted from local midnight."""
    now = time.time() if now is None else now
    day_start = (
        datetime.datetime.fromtimestamp(now)
        .replace(hour=0, minute=0, second=0, microsecond=0)
        .timestamp()
    )
    start = day_start + ((now - day_start) // window_s) * window_s
    return start, start + window_s


@dataclass
class _UsageRecord:
    account_id: str
    timestamp: float
    stats: UsageStats


class InMemoryUsageStore:
    """Append-only usage log with window queries."""

    def __init__(self) -> None:
        self._records: list[_UsageRecord] = []
        self.throttle_events: list[ThrottleEvent] = []

    def record_usage(
        self, account_id: str, stats: UsageStats, timestamp: float | None = None
    ) -> None:
        self._records.append(
            _UsageRecord(account_id, time.time() if timestamp is None else timestamp, stats)
        )

    def get_account_usage_in_window(
        self, account_id: str, window_start: float, window_end: float
    ) -> WindowUsage:
        usage = WindowUsage()
        for record in self._records:
            if record.account_id != account_id:
                continue
            if not window_start <= record.timestamp < window_end:
                continue
            usage.input_tokens += record.stats.input_tokens
            usage.output_tokens += record.stats.output_tokens
            usage.cache_read_tokens += record.stats.cache_read_input_tokens
            usage.cache_creation_tokens += record.stats.cache_creation_input_tokens
            usage.cost_usd += record.stats.total_cost_usd
            usage.query_count += 1
        return usage

    def insert_throttle_event(self, event: ThrottleEvent) -> None:
        self.throttle_events.append(event)

    def get_throttle_events(
        self, account_id: str | None = None, since: float = 0.0
    ) -> list[ThrottleEvent]:
        return [
            e
            for e in self.throttle_events
            if (account_id is None or e.account_id == account_id) and e.timestamp >= since
        ]
