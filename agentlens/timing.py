"""End-to-end session timing derived from competing timestamp signals."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping

_START_FALLBACK_FIELDS = ("session_started_at", "first_event_at")
_FINISH_FALLBACK_FIELDS = ("last_event_at", "session_finished_at")
DERIVED_FIELDS = ("end_to_end_started_at", "end_to_end_finished_at", "end_to_end_duration_ms")


@dataclass(frozen=True)
class EndToEndTiming:
    started_at: float | None
    finished_at: float | None
    duration_ms: float | None

    def as_fields(self) -> dict[str, float | None]:
        return {
            "end_to_end_started_at": self.started_at,
            "end_to_end_finished_at": self.finished_at,
            "end_to_end_duration_ms": self.duration_ms,
        }


def normalize_timestamp(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def _present(session: Mapping[str, Any], fields: tuple[str, ...]) -> list[float]:
    return [v for v in (normalize_timestamp(session.get(f)) for f in fields) if v is not None]


def derive_end_to_end_timing(session: Mapping[str, Any]) -> EndToEndTiming:
    """First user message to last assistant message.

    Without a user message the start falls back to the earliest of the
    session-started and first-event timestamps; without an assistant message
    the finish falls back to the latest of the session-finished and last-event
    timestamps. Duration stays ``None`` (not zero) when either bound is missing
    or the finish precedes the start.
    """
    started_at = normalize_timestamp(session.get("first_user_message_at"))
    if started_at is None:
        starts = _present(session, _START_FALLBACK_FIELDS)
        started_at = min(starts) if starts else None

    finished_at = normalize_timestamp(session.get("last_assistant_message_at"))
    if finished_at is None:
        finishes = _present(session, _FINISH_FALLBACK_FIELDS)
        finished_at = max(finishes) if finishes else None

    if started_at is not None and finished_at is not None and finished_at >= started_at:
        return EndToEndTiming(started_at, finished_at, finished_at - started_at)
    return EndToEndTiming(started_at, finished_at, None)


def has_stored_timing(session: Mapping[str, Any]) -> bool:
    return all(normalize_timestamp(session.get(f)) is not None for f in DERIVED_FIELDS)


def timing_with_fallback(session: Mapping[str, Any]) -> dict[str, float | None]:
    """Stored derived fields, filling any gaps by deriving at read time."""
    derived = derive_end_to_end_timing(session).as_fields()
    return {
        key: session.get(key) if session.get(key) is not None else derived[key]
        for key in DERIVED_FIELDS
    }


def track_extrema(session: Mapping[str, Any], timestamp: float, kind: str, role: str | None) -> dict[str, float]:
    """Return the timestamp fields an event at ``timestamp`` moves."""
    patch: dict[str, float] = {}

    first_event = normalize_timestamp(session.get("first_event_at"))
    if first_event is None or timestamp < first_event:
        patch["first_event_at"] = timestamp

    last_event = normalize_timestamp(session.get("last_event_at"))
    if last_event is None or timestamp > last_event:
        patch["last_event_at"] = timestamp

    if kind == "message_logged":
        if role == "user":
            first_user = normalize_timestamp(session.get("first_user_message_at"))
            if first_user is None or timestamp < first_user:
                patch["first_user_message_at"] = timestamp
        elif role == "assistant":
            last_assistant = normalize_timestamp(session.get("last_assistant_message_at"))
            if last_assistant is None or timestamp > last_assistant:
                patch["last_assistant_message_at"] = timestamp

    return patch


def timing_patch(session: Mapping[str, Any], timestamp: float, kind: str, role: str | None) -> dict[str, Any]:
    """Compute the minimal session patch for one ingested event.

    Empty when nothing changes, so callers can skip the write.
    """
    patch: dict[str, Any] = track_extrema(session, timestamp, kind, role)
    current_updated = normalize_timestamp(session.get("updated_at"))
    next_updated = current_updated if current_updated is not None and current_updated > timestamp else timestamp

    if patch:
        timing = derive_end_to_end_timing({**session, **patch})
        for key, value in timing.as_fields().items():
            if value is not None and value != session.get(key):
                patch[key] = value
        patch["updated_at"] = next_updated
        return patch

    if has_stored_timing(session):
        return {}

    timing = derive_end_to_end_timing(session)
    changed = {
        key: value
        for key, value in timing.as_fields().items()
        if value is not None and value != session.get(key)
    }
    if changed:
        changed["updated_at"] = next_updated
    return changed
