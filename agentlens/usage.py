"""Token usage maps: sparse category -> count dictionaries."""
from __future__ import annotations

from typing import Any

USAGE_KEYS = (
    "promptTokens",
    "completionTokens",
    "totalTokens",
    "reasoningTokens",
    "cachedInputTokens",
    "charCount",
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def usage_value(usage: Any, key: str) -> float:
    if not isinstance(usage, dict):
        return 0
    value = usage.get(key)
    return value if _is_number(value) else 0


def has_usage(usage: Any) -> bool:
    """True when at least one known category carries a positive count."""
    if not isinstance(usage, dict):
        return False
    return any(usage_value(usage, key) > 0 for key in USAGE_KEYS)


def clean_usage(raw: Any) -> dict[str, float] | None:
    """Keep only known numeric categories; ``None`` for anything unusable."""
    if not isinstance(raw, dict):
        return None
    cleaned = {key: raw[key] for key in USAGE_KEYS if _is_number(raw.get(key))}
    return cleaned or None


def merge_usage(base: Any, delta: Any) -> dict[str, float]:
    """Sum two usage maps category by category.

    Absent categories count as zero, each sum is rounded to 4 decimal places
    and categories that sum to exactly zero are dropped so the map stays
    sparse. ``totalTokens`` is summed like any other key, never recomputed.
    """
    result: dict[str, float] = {}
    for key in USAGE_KEYS:
        total = round(usage_value(base, key) + usage_value(delta, key), 4)
        if total != 0:
            result[key] = total
    return result
