"""Usage counter aggregation and cumulative-to-delta normalization."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from agentmux.process.types import UsageStats, UsageTotals

if TYPE_CHECKING:
    from agentmux.process.types import ManagedProcess

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 200_000


def _num(value: Any) -> int:
    return int(value) if isinstance(value, (int, float)) else 0


def aggregate_model_usage(
    model_usage: dict[str, dict[str, Any]] | None,
    usage: dict[str, Any] | None = None,
    total_cost_usd: float = 0.0,
) -> UsageStats:
    """Sum per-model usage, falling back to the flat ``usage`` block.

    The largest context window reported by any model wins.
    """
    stats = UsageStats(total_cost_usd=float(total_cost_usd or 0.0))
    context_window = 0

    if model_usage:
        for model_stats in model_usage.values():
            stats.input_tokens += _num(model_stats.get("inputTokens"))
            stats.output_tokens += _num(model_stats.get("outputTokens"))
            stats.cache_read_input_tokens += _num(model_stats.get("cacheReadInputTokens"))
            stats.cache_creation_input_tokens += _num(
                model_stats.get("cacheCreationInputTokens")
            )
            context_window = max(context_window, _num(model_stats.get("contextWindow")))

    if stats.input_tokens == 0 and stats.output_tokens == 0 and usage:
        stats.input_tokens = _num(usage.get("input_tokens"))
        stats.output_tokens = _num(usage.get("output_tokens"))
        stats.cache_read_input_tokens = _num(usage.get("cache_read_input_tokens"))
        stats.cache_creation_input_tokens = _num(usage.get("cache_creation_input_tokens"))

    stats.context_window = context_window or DEFAULT_CONTEXT_WINDOW
    return stats


def _totals(stats: UsageStats) -> UsageTotals:
    return UsageTotals(
        input_tokens=stats.input_tokens,
        output_tokens=stats.output_tokens,
        cache_read_input_tokens=stats.cache_read_input_tokens,
        cache_creation_input_tokens=stats.cache_creation_input_tokens,
        reasoning_tokens=stats.reasoning_tokens,
    )


def normalize_cumulative_usage(process: ManagedProcess, stats: UsageStats) -> UsageStats:
    """Turn running totals into per-event deltas for ``process``.

    The first report is passed through and becomes the baseline. A report
    where any counter went backwards means the agent is not cumulative after
    all (or reset its counters): the process is switched to raw mode, the
    baseline re-based, and the report passed through unchanged, so a
    negative delta is never emitted.
    """
    totals = _totals(stats)
    last = process.last_usage_totals

    if process.usage_is_cumulative is False or last is None:
        process.last_usage_totals = totals
        return stats

    delta = UsageTotals(
        input_tokens=totals.input_tokens - last.input_tokens,
        output_tokens=totals.output_tokens - last.output_tokens,
        cache_read_input_tokens=totals.cache_read_input_tokens - last.cache_read_input_tokens,
        cache_creation_input_tokens=(
            totals.cache_creation_input_tokens - last.cache_creation_input_tokens
        ),
        reasoning_tokens=totals.reasoning_tokens - last.reasoning_tokens,
    )
    monotonic = all(
        v >= 0
        for v in (
            delta.input_tokens,
            delta.output_tokens,
            delta.cache_read_input_tokens,
            delta.cache_creation_input_tokens,
            delta.reasoning_tokens,
        )
    )

    process.last_usage_totals = totals
    if not monotonic:
        logger.debug(
            "Usage counters for %s went backwards; treating as raw values",
            process.session_id,
        )
        process.usage_is_cumulative = False
        return stats

    process.usage_is_cumulative = True
    return replace(
        stats,
        input_tokens=delta.input_tokens,
        output_tokens=delta.output_tokens,
        cache_read_input_tokens=delta.cache_read_input_tokens,
        cache_creation_input_tokens=delta.cache_creation_input_tokens,
        reasoning_tokens=delta.reasoning_tokens,
    )
