"""Read paths and tag mutations over the session aggregates.

Listing and summary read only the aggregate tables; the event log is read
only for a single session's timeline.
"""
from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from agentlens.db.connection import DbConnection, read_snapshot, transaction
from agentlens.db.factory import (
    get_event_repository,
    get_session_repository,
    get_step_repository,
    get_tool_call_repository,
)
from agentlens.models import (
    EventRecord,
    MetricsSummary,
    RecentToolCall,
    RepeatOffenders,
    SessionDetail,
    SessionSummary,
    SessionTimeline,
    StepRecord,
    SummaryAverages,
    SummaryTotals,
    TagMutationResult,
    ToolBreakdown,
    ToolCallRecord,
    ToolStats,
)
from agentlens.session_tags import (
    decode_session_tags,
    dedupe_preserve_order,
    encode_session_tags,
    normalize_tag_value,
)
from agentlens.timing import timing_with_fallback
from agentlens.usage import clean_usage, usage_value

logger = logging.getLogger("agentlens.queries")

DEFAULT_SESSION_LIMIT = 25
MAX_SESSION_LIMIT = 200
SUMMARY_SESSION_LIMIT = 200
TIMELINE_STEP_LIMIT = 500
TIMELINE_TOOL_CALL_LIMIT = 1000
TIMELINE_EVENT_LIMIT = 2000
RECENT_TOOL_CALL_SCAN = 25
RECENT_TOOL_CALL_LIMIT = 10
REPEAT_OFFENDER_MIN_CALLS = 3
ERROR_RATE_MIN_CALLS = 10
REPEAT_OFFENDER_TOP = 10


def _now_ms() -> int:
    return int(time.time() * 1000)


def clamp_limit(limit: int | None) -> int:
    value = DEFAULT_SESSION_LIMIT if limit is None else int(limit)
    return max(1, min(value, MAX_SESSION_LIMIT))


# ── Row mapping ─────────────────────────────────────────────────────

def _session_summary(row: dict[str, Any]) -> SessionSummary:
    labels = decode_session_tags(row.get("tags"))
    timing = timing_with_fallback(row)
    return SessionSummary(
        sessionId=row["session_id"],
        requestId=row["request_id"],
        userIdentifier=row.get("user_identifier"),
        model=row.get("model"),
        personaMode=bool(row.get("persona_mode")),
        toolCallCount=row.get("tool_call_count") or 0,
        stepCount=row.get("step_count") or 0,
        estimatedCostUSD=row.get("estimated_cost_usd") or 0.0,
        actualCostUSD=row.get("actual_cost_usd"),
        estimatedUsage=clean_usage(row.get("estimated_usage")),
        actualUsage=clean_usage(row.get("actual_usage")),
        sessionStartedAt=row.get("session_started_at"),
        sessionFinishedAt=row.get("session_finished_at"),
        durationMs=timing["end_to_end_duration_ms"],
        endToEndStartedAt=timing["end_to_end_started_at"],
        endToEndFinishedAt=timing["end_to_end_finished_at"],
        endToEndDurationMs=timing["end_to_end_duration_ms"],
        attachmentsCount=row.get("attachments_count") or 0,
        messagePreviews=row.get("message_previews"),
        tags=labels.tags,
        customTitle=labels.title,
        status="completed" if row.get("session_finished_at") else "active",
        updatedAt=row.get("updated_at") or 0,
        createdAt=row.get("created_at") or 0,
    )


def _session_detail(row: dict[str, Any]) -> SessionDetail:
    labels = decode_session_tags(row.get("tags"))
    timing = timing_with_fallback(row)
    tool_names = row.get("tool_names")
    return SessionDetail(
        sessionId=row["session_id"],
        requestId=row["request_id"],
        userIdentifier=row.get("user_identifier"),
        threadId=row.get("thread_id"),
        model=row.get("model"),
        personaMode=bool(row.get("persona_mode")),
        toolNames=[name for name in tool_names if isinstance(name, str)] if isinstance(tool_names, list) else [],
        attachmentsCount=row.get("attachments_count"),
        messagePreviews=row.get("message_previews"),
        stepCount=row.get("step_count") or 0,
        toolCallCount=row.get("tool_call_count") or 0,
        estimatedUsage=clean_usage(row.get("estimated_usage")),
        actualUsage=clean_usage(row.get("actual_usage")),
        estimatedCostUSD=row.get("estimated_cost_usd"),
        actualCostUSD=row.get("actual_cost_usd"),
        sessionStartedAt=row.get("session_started_at"),
        sessionFinishedAt=row.get("session_finished_at"),
        firstEventAt=row.get("first_event_at"),
        lastEventAt=row.get("last_event_at"),
        firstUserMessageAt=row.get("first_user_message_at"),
        lastAssistantMessageAt=row.get("last_assistant_message_at"),
        endToEndStartedAt=timing["end_to_end_started_at"],
        endToEndFinishedAt=timing["end_to_end_finished_at"],
        endToEndDurationMs=timing["end_to_end_duration_ms"],
        tags=labels.tags,
        customTitle=labels.title,
        createdAt=row.get("created_at") or 0,
        updatedAt=row.get("updated_at") or 0,
    )


def _step_record(row: dict[str, Any]) -> StepRecord:
    return StepRecord(
        sessionId=row["session_id"],
        requestId=row["request_id"],
        stepIndex=row["step_index"],
        timestamp=row["timestamp"],
        textLength=row.get("text_length") or 0,
        toolCallsCount=row.get("tool_calls_count") or 0,
        toolResultsCount=row.get("tool_results_count") or 0,
        finishReason=row.get("finish_reason"),
        usage=row.get("usage") if isinstance(row.get("usage"), dict) else None,
        generatedTextPreview=row.get("generated_text_preview"),
        createdAt=row.get("created_at") or 0,
    )


def _tool_call_record(row: dict[str, Any]) -> ToolCallRecord:
    def _obj(key: str) -> dict[str, Any] | None:
        value = row.get(key)
        return value if isinstance(value, dict) else None

    return ToolCallRecord(
        sessionId=row["session_id"],
        requestId=row["request_id"],
        toolCallId=row["tool_call_id"],
        toolName=row.get("tool_name") or "unknown",
        stepIndex=row.get("step_index") or 0,
        status=row.get("status") or "started",
        startedAt=row.get("started_at"),
        completedAt=row.get("completed_at"),
        durationMs=row.get("duration_ms"),
        inputSummary=row.get("input_summary"),
        resultSummary=row.get("result_summary"),
        tokenUsage=_obj("token_usage"),
        costUSD=row.get("cost_usd"),
        isError=row.get("is_error"),
        outboundSequence=row.get("outbound_sequence"),
        outboundAt=row.get("outbound_at"),
        outboundPayload=_obj("outbound_payload"),
        inboundSequence=row.get("inbound_sequence"),
        inboundAt=row.get("inbound_at"),
        inboundPayload=_obj("inbound_payload"),
        createdAt=row.get("created_at") or 0,
        updatedAt=row.get("updated_at") or 0,
    )


def _event_record(row: dict[str, Any]) -> EventRecord:
    payload = row.get("payload")
    return EventRecord(
        sessionId=row["session_id"],
        requestId=row["request_id"],
        sequence=row["sequence"],
        timestamp=row["timestamp"],
        kind=row["kind"],
        payload=payload if isinstance(payload, dict) else {},
        source=row.get("source"),
        model=row.get("model"),
        threadId=row.get("thread_id"),
        personaMode=row.get("persona_mode"),
        userIdentifier=row.get("user_identifier"),
        dedupeKey=row.get("dedupe_key"),
        createdAt=row.get("created_at") or 0,
    )


# ── Queries ─────────────────────────────────────────────────────────

async def list_sessions(db: DbConnection, limit: int | None = None) -> list[SessionSummary]:
    async with read_snapshot(db) as conn:
        rows = await get_session_repository(conn).list_recent(clamp_limit(limit))
    return [_session_summary(row) for row in rows]


async def get_session_timeline(db: DbConnection, session_id: str) -> SessionTimeline | None:
    async with read_snapshot(db) as conn:
        session = await get_session_repository(conn).get_by_session_id(session_id)
        if not session:
            return None

        steps = await get_step_repository(conn).list_for_session(session_id, limit=TIMELINE_STEP_LIMIT)
        tool_calls = await get_tool_call_repository(conn).list_for_session(session_id, limit=TIMELINE_TOOL_CALL_LIMIT)
        events = await get_event_repository(conn).list_for_session(session_id, limit=TIMELINE_EVENT_LIMIT)

    steps.sort(key=lambda row: row["step_index"])
    tool_calls.sort(key=lambda row: row.get("started_at") or 0)

    return SessionTimeline(
        session=_session_detail(session),
        steps=[_step_record(row) for row in steps],
        toolCalls=[_tool_call_record(row) for row in tool_calls],
        events=[_event_record(row) for row in events],
    )


async def _windowed_sessions(db: DbConnection, window_ms: int | None) -> list[dict[str, Any]]:
    sessions = await get_session_repository(db).list_recent(SUMMARY_SESSION_LIMIT)
    if window_ms:
        window_start = _now_ms() - window_ms
        sessions = [row for row in sessions if (row.get("created_at") or 0) >= window_start]
    return sessions


async def get_summary(db: DbConnection, window_ms: int | None = None) -> MetricsSummary:
    async with read_snapshot(db) as conn:
        sessions = await _windowed_sessions(conn, window_ms)
        recent_rows = await get_tool_call_repository(conn).list_recent_completed(limit=RECENT_TOOL_CALL_SCAN)

    total_sessions = len(sessions)
    active_sessions = sum(1 for row in sessions if not row.get("session_finished_at"))
    total_tool_calls = sum(row.get("tool_call_count") or 0 for row in sessions)
    estimated_tokens = sum(usage_value(row.get("estimated_usage"), "totalTokens") for row in sessions)
    actual_tokens = sum(usage_value(row.get("actual_usage"), "totalTokens") for row in sessions)
    estimated_cost = sum(row.get("estimated_cost_usd") or 0 for row in sessions)
    actual_cost = sum(row.get("actual_cost_usd") or 0 for row in sessions)

    if total_sessions:
        averages = SummaryAverages(
            toolCallsPerSession=round(total_tool_calls / total_sessions, 2),
            estimatedTokensPerSession=round(estimated_tokens / total_sessions, 2),
            actualTokensPerSession=round(actual_tokens / total_sessions, 2),
        )
    else:
        averages = SummaryAverages()

    recent = [
        RecentToolCall(
            sessionId=row["session_id"],
            toolCallId=row["tool_call_id"],
            toolName=row.get("tool_name") or "unknown",
            stepIndex=row.get("step_index") or 0,
            completedAt=row["completed_at"],
            durationMs=row.get("duration_ms"),
            costUSD=row.get("cost_usd") or 0.0,
            isError=bool(row.get("is_error")),
            tokenUsage=row.get("token_usage") if isinstance(row.get("token_usage"), dict) else None,
        )
        for row in recent_rows
        if row.get("completed_at") is not None
    ][:RECENT_TOOL_CALL_LIMIT]

    return MetricsSummary(
        totals=SummaryTotals(
            sessions=total_sessions,
            activeSessions=active_sessions,
            toolCalls=total_tool_calls,
            estimatedTokens=estimated_tokens,
            actualTokens=actual_tokens,
            estimatedCostUSD=round(estimated_cost, 4),
            actualCostUSD=round(actual_cost, 4),
        ),
        averages=averages,
        recentToolCalls=recent,
    )


# ── Per-tool breakdown ──────────────────────────────────────────────

def p95(values: list[float]) -> float:
    if not values:
        return 0
    ordered = sorted(values)
    return ordered[int(0.95 * (len(ordered) - 1))] or 0


@dataclass
class _ToolAggregate:
    tool: str
    total_calls: int = 0
    sessions: set[str] = field(default_factory=set)
    durations: list[float] = field(default_factory=list)
    errors: int = 0
    total_tokens: float = 0
    cost: float = 0.0
    max_consecutive: int = 0

    def to_stats(self, session_count: int) -> ToolStats:
        unique = len(self.sessions)
        return ToolStats(
            tool=self.tool,
            totalCalls=self.total_calls,
            uniqueSessions=unique,
            avgCallsPerSession=self.total_calls / session_count if session_count else 0.0,
            avgWhenUsed=self.total_calls / unique if unique else 0.0,
            errors=self.errors,
            errorRate=self.errors / self.total_calls if self.total_calls else 0.0,
            avgMs=int(sum(self.durations) / self.total_calls + 0.5) if self.total_calls else 0,
            p95Ms=p95(self.durations),
            totalTokens=self.total_tokens,
            costUSD=round(self.cost, 6),
            maxConsecutive=self.max_consecutive,
        )


async def get_tool_breakdown(db: DbConnection, window_ms: int | None = None) -> ToolBreakdown:
    """Per-tool call statistics over the same bounded window as ``get_summary``.

    Only completed calls count. Consecutive runs are measured per session in
    ``startedAt`` order and the longest run of each tool across sessions wins.
    """
    async with read_snapshot(db) as conn:
        sessions = await _windowed_sessions(conn, window_ms)
        session_ids = [row["session_id"] for row in sessions]
        calls = await get_tool_call_repository(conn).list_for_sessions(session_ids)

    by_session: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for call in calls:
        if call.get("completed_at") is not None:
            by_session[call["session_id"]].append(call)

    aggregates: dict[str, _ToolAggregate] = {}
    for session_id, session_calls in by_session.items():
        session_calls.sort(key=lambda row: row.get("started_at") or 0)
        last_tool: str | None = None
        run = 0
        for call in session_calls:
            name = call.get("tool_name") or "unknown"
            agg = aggregates.setdefault(name, _ToolAggregate(tool=name))
            agg.total_calls += 1
            agg.sessions.add(session_id)
            agg.durations.append(call.get("duration_ms") or 0)
            if call.get("is_error"):
                agg.errors += 1
            agg.total_tokens += usage_value(call.get("token_usage"), "totalTokens")
            agg.cost += call.get("cost_usd") or 0

            run = run + 1 if name == last_tool else 1
            last_tool = name
            agg.max_consecutive = max(agg.max_consecutive, run)

    per_tool = sorted(
        (agg.to_stats(len(sessions)) for agg in aggregates.values()),
        key=lambda stats: stats.totalCalls,
        reverse=True,
    )
    offenders = [stats for stats in per_tool if stats.totalCalls >= REPEAT_OFFENDER_MIN_CALLS]

    return ToolBreakdown(
        sessions=len(sessions),
        toolCalls=sum(stats.totalCalls for stats in per_tool),
        perTool=per_tool,
        repeatOffenders=RepeatOffenders(
            byTotalCalls=offenders[:REPEAT_OFFENDER_TOP],
            byAvgCallsPerSession=sorted(offenders, key=lambda s: s.avgCallsPerSession, reverse=True)[:REPEAT_OFFENDER_TOP],
            byMaxConsecutive=sorted(offenders, key=lambda s: s.maxConsecutive, reverse=True)[:REPEAT_OFFENDER_TOP],
            byErrorRate=sorted(
                (s for s in offenders if s.totalCalls >= ERROR_RATE_MIN_CALLS),
                key=lambda s: s.errorRate,
                reverse=True,
            )[:REPEAT_OFFENDER_TOP],
        ),
    )


# ── Tag mutations ───────────────────────────────────────────────────

async def _locked_session(conn: DbConnection, session_id: str) -> dict | None:
    """Load a session for read-modify-write, holding the lock ingestion takes."""
    await get_event_repository(conn).lock_session(session_id)
    return await get_session_repository(conn).get_by_session_id(session_id)


async def set_session_tag(db: DbConnection, session_id: str, tag: str | None) -> TagMutationResult:
    """Set the custom title; an empty or missing value clears it."""
    title = normalize_tag_value(tag)
    async with transaction(db) as conn:
        repo = get_session_repository(conn)
        session = await _locked_session(conn, session_id)
        if not session:
            return TagMutationResult(ok=False, error="not_found")
        labels = decode_session_tags(session.get("tags"))
        await repo.patch(session["id"], {
            "tags": encode_session_tags(title, labels.tags),
            "updated_at": _now_ms(),
        })
    logger.info(f"Session {session_id} title {'set' if title else 'cleared'}")
    return TagMutationResult(ok=True, tag=title)


async def add_session_tag(db: DbConnection, session_id: str, tag: str) -> TagMutationResult:
    async with transaction(db) as conn:
        repo = get_session_repository(conn)
        session = await _locked_session(conn, session_id)
        if not session:
            return TagMutationResult(ok=False, error="not_found")
        normalized = normalize_tag_value(tag)
        if not normalized:
            return TagMutationResult(ok=False, error="invalid_tag")

        labels = decode_session_tags(session.get("tags"))
        if labels.has_tag(normalized):
            return TagMutationResult(ok=True, tags=labels.tags)

        next_tags = [*labels.tags, normalized]
        await repo.patch(session["id"], {
            "tags": encode_session_tags(labels.title, next_tags),
            "updated_at": _now_ms(),
        })
    return TagMutationResult(ok=True, tags=dedupe_preserve_order(next_tags))


async def remove_session_tag(db: DbConnection, session_id: str, tag: str) -> TagMutationResult:
    async with transaction(db) as conn:
        repo = get_session_repository(conn)
        session = await _locked_session(conn, session_id)
        if not session:
            return TagMutationResult(ok=False, error="not_found")
        normalized = normalize_tag_value(tag)
        if not normalized:
            return TagMutationResult(ok=False, error="invalid_tag")

        labels = decode_session_tags(session.get("tags"))
        needle = normalized.lower()
        remaining = [existing for existing in labels.tags if existing.lower() != needle]
        if len(remaining) == len(labels.tags):
            return TagMutationResult(ok=True, tags=labels.tags)

        await repo.patch(session["id"], {
            "tags": encode_session_tags(labels.title, remaining),
            "updated_at": _now_ms(),
        })
    return TagMutationResult(ok=True, tags=remaining)
