"""Per-field merge strategies for aggregate upserts.

Each aggregate declares an upsert policy mapping a column to the strategy that
reconciles the stored value with an incoming one. ``merge_record`` applies the
policy; columns without a strategy fall back to ``overwrite_latest``.

``None`` means "not supplied" for incoming values, mirroring a patch that only
carries defined fields.
"""
from __future__ import annotations

from typing import Any, Callable, Mapping

from agentlens.usage import has_usage, merge_usage

MergeStrategy = Callable[[Any, Any], Any]


def preserve_first(current: Any, incoming: Any) -> Any:
    return current if current is not None else incoming


def overwrite_latest(current: Any, incoming: Any) -> Any:
    return incoming if incoming is not None else current


def max_of(current: Any, incoming: Any) -> Any:
    if current is None:
        return incoming
    if incoming is None:
        return current
    return max(current, incoming)


def sum_of(current: Any, incoming: Any) -> Any:
    if incoming is None:
        return current
    return (current or 0) + incoming


def sum_rounded(places: int) -> MergeStrategy:
    def _merge(current: Any, incoming: Any) -> Any:
        if incoming is None:
            return current
        return round((current or 0) + incoming, places)

    _merge.__name__ = f"sum_rounded_{places}"
    return _merge


def overwrite_if_usage(current: Any, incoming: Any) -> Any:
    return incoming if has_usage(incoming) else current


def fold_usage(current: Any, incoming: Any) -> Any:
    """Add ``incoming`` usage onto ``current``; maps without usage are ignored."""
    if not has_usage(incoming):
        return current
    return merge_usage(current, incoming)


def latch(terminal: Any) -> MergeStrategy:
    """Overwrite freely until ``terminal`` is stored, then never leave it."""

    def _merge(current: Any, incoming: Any) -> Any:
        if current == terminal:
            return current
        return overwrite_latest(current, incoming)

    _merge.__name__ = f"latch_{terminal}"
    return _merge


def merge_record(
    existing: Mapping[str, Any] | None,
    incoming: Mapping[str, Any],
    spec: Mapping[str, MergeStrategy],
) -> dict[str, Any]:
    """Merge ``incoming`` into ``existing`` column by column.

    With no existing record the incoming values are taken as-is.
    """
    if existing is None:
        return {key: value for key, value in incoming.items()}

    merged = dict(existing)
    for key, value in incoming.items():
        strategy = spec.get(key, overwrite_latest)
        merged[key] = strategy(existing.get(key), value)
    return merged


def changed_fields(existing: Mapping[str, Any], merged: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in merged.items() if existing.get(key) != value}
