"""Kind-specific handlers that fold one event into the session/step/tool-call aggregates.

Every handler runs inside the ingestion transaction opened by
``IngestEngine`` and receives an ``IngestContext`` bound to that transaction's
connection, plus the event payload already parsed for its kind. Handlers
never commit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from agentlens.db import factory
from agentlens.merge_policy import (
    MergeStrategy,
    changed_fields,
    fold_usage,
    latch,
    max_of,
    merge_record,
    overwrite_if_usage,
    preserve_first,
    sum_of,
    sum_rounded,
)
from agentlens.models import AgentEvent, EventKind, ToolCallStatus
from agentlens.parsers.events import (
    EventPayload,
    MessageLoggedPayload,
    SessionFinishedPayload,
    SessionStartedPayload,
    StepFinishedPayload,
    ToolCallPhasePayload,
    ToolCallResultPayload,
)
from agentlens.timing import timing_patch

logger = logging.getLogger("agentlens.ingest")


# ── Upsert policies ───────────────────────────────────────────────────

STEP_UPSERT: dict[str, MergeStrategy] = {
    "created_at": preserve_first,
}

TOOL_CALL_UPSERT: dict[str, MergeStrategy] = {
    "request_id": preserve_first,
    "created_at": preserve_first,
    "started_at": preserve_first,
    "status": latch(ToolCallStatus.COMPLETED.value),
    "updated_at": max_of,
}

SESSION_TOUCH: dict[str, MergeStrategy] = {
    "updated_at": max_of,
}

SESSION_STEP_PROGRESS: dict[str, MergeStrategy] = {
    **SESSION_TOUCH,
    "step_count": max_of,
}

SESSION_FINISH: dict[str, MergeStrategy] = {
    **SESSION_TOUCH,
    "estimated_usage": overwrite_if_usage,
    "actual_usage": overwrite_if_usage,
}

SESSION_COMPLETION_FOLD: dict[str, MergeStrategy] = {
    **SESSION_TOUCH,
    "estimated_usage": fold_usage,
    "estimated_cost_usd": sum_rounded(6),
    "tool_call_count": sum_of,
}


@dataclass
class Completion:
    """A tool call that reached ``completed`` for the first time."""

    tool_name: str
    is_error: bool
    duration_ms: float | None
    cost_usd: float | None
    token_usage: dict[str, Any] | None
    model: str | None
    source: str | None


@dataclass
class IngestContext:
    events: Any
    sessions: Any
    steps: Any
    tool_calls: Any
    completions: list[Completion] = field(default_factory=list)

    @classmethod
    def for_connection(cls, db: Any) -> "IngestContext":
        return cls(
            events=factory.get_event_repository(db),
            sessions=factory.get_session_repository(db),
            steps=factory.get_step_repository(db),
            tool_calls=factory.get_tool_call_repository(db),
        )


def _first_defined(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _round_cost(value: float | None) -> float | None:
    return None if value is None else round(value, 6)


async def patch_session(
    ctx: IngestContext,
    session: dict,
    incoming: Mapping[str, Any],
    spec: Mapping[str, MergeStrategy] | None = None,
) -> dict:
    """Merge ``incoming`` into ``session`` and write only the columns that changed."""
    merged = merge_record(session, incoming, spec or SESSION_TOUCH)
    await ctx.sessions.patch(session["id"], changed_fields(session, merged))
    return merged


async def ensure_session_record(
    ctx: IngestContext,
    event: AgentEvent,
    defaults: Mapping[str, Any] | None = None,
) -> dict:
    """Find or create the session an event belongs to.

    Lookup is by ``sessionId`` first, then ``requestId``. A match on either key
    adopts the event's value for the other one, so a producer that rotates ids
    mid-flight re-keys the existing row instead of opening a second one.
    """
    defaults = defaults or {}

    existing = await ctx.sessions.get_by_session_id(event.sessionId)
    if existing:
        if existing["request_id"] != event.requestId:
            patch = {"request_id": event.requestId, "updated_at": max_of(existing["updated_at"], event.timestamp)}
            await ctx.sessions.patch(existing["id"], patch)
            return {**existing, **patch}
        return existing

    by_request = await ctx.sessions.get_by_request_id(event.requestId)
    if by_request:
        if by_request["session_id"] != event.sessionId:
            logger.info(f"Re-keying session {by_request['session_id']} -> {event.sessionId} (request {event.requestId})")
            patch = {"session_id": event.sessionId, "updated_at": max_of(by_request["updated_at"], event.timestamp)}
            await ctx.sessions.patch(by_request["id"], patch)
            return {**by_request, **patch}
        return by_request

    record = {
        "session_id": event.sessionId,
        "request_id": event.requestId,
        "session_started_at": _first_defined(defaults.get("session_started_at"), event.timestamp),
        "created_at": _first_defined(defaults.get("created_at"), event.timestamp),
        "updated_at": _first_defined(defaults.get("updated_at"), event.timestamp),
        "user_identifier": _first_defined(defaults.get("user_identifier"), event.userIdentifier),
        "thread_id": _first_defined(defaults.get("thread_id"), event.threadId),
        "model": _first_defined(defaults.get("model"), event.model),
        "persona_mode": _first_defined(defaults.get("persona_mode"), event.personaMode, False),
        "tool_names": _first_defined(defaults.get("tool_names"), []),
        "attachments_count": defaults.get("attachments_count"),
        "message_previews": defaults.get("message_previews"),
        "step_count": 0,
        "tool_call_count": 0,
    }
    return await ctx.sessions.insert(record)


# ── Session lifecycle ───────────────────────────────────────────────

async def handle_session_started(ctx: IngestContext, event: AgentEvent, payload: SessionStartedPayload) -> None:
    defaults = {
        "user_identifier": _first_defined(event.userIdentifier, payload.user_identifier),
        "thread_id": event.threadId,
        "model": event.model,
        "persona_mode": _first_defined(payload.persona_mode, event.personaMode, False),
        "tool_names": payload.tool_names,
        "attachments_count": payload.attachments_count,
        "message_previews": payload.message_previews,
        "session_started_at": _first_defined(payload.session_started_at, event.timestamp),
        "created_at": event.timestamp,
        "updated_at": event.timestamp,
    }
    session = await ensure_session_record(ctx, event, defaults)
    await patch_session(ctx, session, {
        "user_identifier": defaults["user_identifier"],
        "thread_id": event.threadId,
        "model": event.model,
        "persona_mode": defaults["persona_mode"],
        "tool_names": defaults["tool_names"],
        "attachments_count": defaults["attachments_count"],
        "message_previews": defaults["message_previews"],
        "session_started_at": defaults["session_started_at"],
        "updated_at": event.timestamp,
    })


async def handle_session_finished(ctx: IngestContext, event: AgentEvent, payload: SessionFinishedPayload) -> None:
    session = await ensure_session_record(ctx, event)
    await patch_session(ctx, session, {
        "session_finished_at": event.timestamp,
        "step_count": payload.step_count,
        "tool_call_count": payload.tool_call_count,
        "estimated_usage": payload.estimated_usage,
        "actual_usage": payload.actual_usage,
        "estimated_cost_usd": _round_cost(payload.estimated_cost_usd),
        "actual_cost_usd": _round_cost(payload.actual_cost_usd),
        "updated_at": event.timestamp,
    }, SESSION_FINISH)


async def handle_touch(ctx: IngestContext, event: AgentEvent, payload: EventPayload) -> None:
    """Kinds without aggregate state of their own only keep the session fresh."""
    session = await ensure_session_record(ctx, event)
    await patch_session(ctx, session, {"updated_at": event.timestamp})


# ── Steps ───────────────────────────────────────────────────────────

async def handle_step_finished(ctx: IngestContext, event: AgentEvent, payload: StepFinishedPayload) -> None:
    session = await ensure_session_record(ctx, event)

    existing = await ctx.steps.get(event.sessionId, payload.step_index)
    step = merge_record(existing, {
        "session_id": event.sessionId,
        "request_id": event.requestId,
        "step_index": payload.step_index,
        "timestamp": event.timestamp,
        "text_length": payload.text_length,
        "tool_calls_count": payload.tool_calls_count,
        "tool_results_count": payload.tool_results_count,
        "finish_reason": payload.finish_reason,
        "usage": payload.usage,
        "generated_text_preview": payload.generated_text_preview,
        "created_at": event.timestamp,
    }, STEP_UPSERT)
    await ctx.steps.upsert(step)

    await patch_session(ctx, session, {
        "step_count": payload.step_index + 1,
        "updated_at": event.timestamp,
    }, SESSION_STEP_PROGRESS)


# ── Tool calls ──────────────────────────────────────────────────────

async def _handle_tool_call_phase(
    ctx: IngestContext,
    event: AgentEvent,
    payload: ToolCallPhasePayload,
    status: ToolCallStatus,
    extra: Mapping[str, Any],
) -> dict:
    session = await ensure_session_record(ctx, event)
    existing = await ctx.tool_calls.get(event.sessionId, payload.tool_call_id)
    tool_call = merge_record(existing, {
        "session_id": event.sessionId,
        "request_id": event.requestId,
        "tool_call_id": payload.tool_call_id,
        "tool_name": payload.tool_name,
        "step_index": payload.step_index,
        "status": status.value,
        "started_at": event.timestamp,
        "input_summary": payload.input_summary,
        "created_at": event.timestamp,
        "updated_at": event.timestamp,
        **extra,
    }, TOOL_CALL_UPSERT)
    await ctx.tool_calls.upsert(tool_call)
    return session


async def handle_tool_call_started(ctx: IngestContext, event: AgentEvent, payload: ToolCallPhasePayload) -> None:
    await _handle_tool_call_phase(ctx, event, payload, ToolCallStatus.STARTED, {})


async def handle_tool_call_outbound(ctx: IngestContext, event: AgentEvent, payload: ToolCallPhasePayload) -> None:
    session = await _handle_tool_call_phase(ctx, event, payload, ToolCallStatus.OUTBOUND, {
        "outbound_sequence": event.sequence,
        "outbound_at": event.timestamp,
        "outbound_payload": event.payload,
    })
    await patch_session(ctx, session, {"updated_at": event.timestamp})


async def handle_tool_call_completed(ctx: IngestContext, event: AgentEvent, payload: ToolCallResultPayload) -> None:
    """Shared by ``tool_call_inbound`` and ``tool_call_finished``.

    Usage, cost and the call counter fold into the session only on the first
    transition to ``completed``; re-deliveries just refresh the row.
    """
    inbound = event.event_kind is EventKind.TOOL_CALL_INBOUND
    session = await ensure_session_record(ctx, event)

    existing = await ctx.tool_calls.get(event.sessionId, payload.tool_call_id)
    already_completed = bool(existing) and existing.get("status") == ToolCallStatus.COMPLETED.value

    fallback_start = event.timestamp - payload.duration_ms if payload.duration_ms else event.timestamp
    incoming: dict[str, Any] = {
        "session_id": event.sessionId,
        "request_id": event.requestId,
        "tool_call_id": payload.tool_call_id,
        "tool_name": payload.tool_name,
        "step_index": payload.step_index,
        "status": ToolCallStatus.COMPLETED.value,
        "started_at": fallback_start,
        "completed_at": event.timestamp,
        "duration_ms": payload.duration_ms,
        "result_summary": payload.result_summary if inbound else (payload.result_summary or {}),
        "token_usage": payload.token_usage,
        "cost_usd": payload.cost_usd,
        "is_error": payload.is_error,
        "created_at": event.timestamp,
        "updated_at": event.timestamp,
    }
    if inbound:
        incoming.update({
            "inbound_sequence": event.sequence,
            "inbound_at": event.timestamp,
            "inbound_payload": event.payload,
        })
    else:
        incoming["input_summary"] = payload.input_summary

    await ctx.tool_calls.upsert(merge_record(existing, incoming, TOOL_CALL_UPSERT))

    if already_completed:
        await patch_session(ctx, session, {"updated_at": event.timestamp})
        return

    await patch_session(ctx, session, {
        "estimated_usage": payload.token_usage,
        "estimated_cost_usd": payload.cost_usd,
        "tool_call_count": 1,
        "updated_at": event.timestamp,
    }, SESSION_COMPLETION_FOLD)
    ctx.completions.append(Completion(
        tool_name=payload.tool_name,
        is_error=payload.is_error,
        duration_ms=payload.duration_ms,
        cost_usd=payload.cost_usd,
        token_usage=payload.token_usage,
        model=_first_defined(event.model, session.get("model")),
        source=event.source,
    ))


# ── Dispatch table ──────────────────────────────────────────────────

EventHandler = Callable[[IngestContext, AgentEvent, Any], Awaitable[None]]

EVENT_HANDLERS: dict[EventKind, EventHandler] = {
    EventKind.SESSION_STARTED: handle_session_started,
    EventKind.SESSION_FINISHED: handle_session_finished,
    EventKind.STEP_FINISHED: handle_step_finished,
    EventKind.TOOL_CALL_STARTED: handle_tool_call_started,
    EventKind.TOOL_CALL_OUTBOUND: handle_tool_call_outbound,
    EventKind.TOOL_CALL_INBOUND: handle_tool_call_completed,
    EventKind.TOOL_CALL_FINISHED: handle_tool_call_completed,
    EventKind.MESSAGE_LOGGED: handle_touch,
    EventKind.CLASSIFICATION_DECIDED: handle_touch,
    EventKind.CAPABILITY_ROUTED: handle_touch,
    EventKind.PERSONA_POST_PROCESSED: handle_touch,
    EventKind.OTHER: handle_touch,
}

_unhandled = [kind.value for kind in EventKind if kind not in EVENT_HANDLERS]
if _unhandled:
    raise RuntimeError(f"No ingestion handler registered for event kinds: {', '.join(_unhandled)}")


# ── Timing ──────────────────────────────────────────────────────────

async def update_session_timing(ctx: IngestContext, event: AgentEvent, payload: EventPayload) -> None:
    session = await ctx.sessions.get_by_session_id(event.sessionId)
    if not session:
        return
    role = payload.role if isinstance(payload, MessageLoggedPayload) else None
    patch = timing_patch(session, event.timestamp, event.kind, role)
    await ctx.sessions.patch(session["id"], patch)
