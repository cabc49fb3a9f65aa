"""Context window usage from token counts."""

from __future__ import annotations

from typing import Any

from agentdock.types import SessionUsage


def compute_context_percent(usage: SessionUsage) -> int | None:
    """Percentage of the context window in use, or None for a bad window.

    Providers report ``input_tokens`` two ways: either non-cached input only
    (the cache fields add to it) or the full total (the cache fields are
    subsets of it). If input already covers the cache fields it is the total.
    """
    if usage.context_window <= 0:
        return None
    cache_total = usage.cache_creation_input_tokens + usage.cache_read_input_tokens
    if cache_total > 0 and usage.input_tokens >= cache_total:
        total = usage.input_tokens
    else:
        total = usage.input_tokens + cache_total
    return round(total / usage.context_window * 100)


def _int(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def usage_from_event(
    usage: dict[str, Any] | None,
    model_usage: dict[str, Any] | None = None,
    *,
    default_window: int = 200_000,
    previous: SessionUsage | None = None,
) -> SessionUsage | None:
    """Build a SessionUsage from an event's ``usage`` / ``modelUsage`` fields.

    The context window comes from the first ``modelUsage.<model>.contextWindow``
    found, else the previous value, else ``default_window``.
    """
    if not isinstance(usage, dict):
        return None
    window = previous.context_window if previous else default_window
    if isinstance(model_usage, dict):
        for entry in model_usage.values():
            if isinstance(entry, dict) and _int(entry.get("contextWindow")) > 0:
                window = entry["contextWindow"]
                break
    return SessionUsage(
        input_tokens=_int(usage.get("input_tokens")),
        output_tokens=_int(usage.get("output_tokens")),
        cache_creation_input_tokens=_int(usage.get("cache_creation_input_tokens")),
        cache_read_input_tokens=_int(usage.get("cache_read_input_tokens")),
        context_window=window,
    )


def usage_to_dict(usage: SessionUsage) -> dict[str, Any]:
    return {
        "inputTokens": usage.input_tokens,
        "outputTokens": usage.output_tokens,
        "cacheCreationInputTokens": usage.cache_creation_input_tokens,
        "cacheReadInputTokens": usage.cache_read_input_tokens,
        "contextWindow": usage.context_window,
        "contextPercent": compute_context_percent(usage),
    }
