"""Event ingestion: dedup into the log, then fold into the aggregates.

Each event is applied in a single transaction: append to the event log,
run the kind-specific handler, recompute session timing. The handler and the
timing step run even when the append was a duplicate, which is safe because
every aggregate update is idempotent under replay.
"""
from __future__ import annotations

import logging
import time
from typing import Any

from agentlens.db.connection import transaction
from agentlens.db.event_handlers import (
    EVENT_HANDLERS,
    Completion,
    IngestContext,
    update_session_timing,
)
from agentlens.models import AgentEvent
from agentlens.parsers.events import parse_event_payload
from agentlens.observability import (
    record_ingestion,
    record_ingestion_failure,
    record_token_cost,
    record_tool_result,
    start_span,
)
from agentlens.usage import usage_value

logger = logging.getLogger("agentlens.ingest")


def event_record(event: AgentEvent) -> dict[str, Any]:
    return {
        "session_id": event.sessionId,
        "request_id": event.requestId,
        "sequence": event.sequence,
        "timestamp": event.timestamp,
        "kind": event.kind,
        "payload": event.payload,
        "source": event.source,
        "model": event.model,
        "thread_id": event.threadId,
        "persona_mode": event.personaMode,
        "user_identifier": event.userIdentifier,
        "dedupe_key": event.dedupeKey,
        "created_at": event.timestamp,
    }


class IngestEngine:
    """Applies agent events to the store, one atomic transaction per event."""

    def __init__(self, db: Any):  # db is Union[aiosqlite.Connection, asyncpg.Pool]
        self.db = db

    async def ingest_event(self, event: AgentEvent) -> dict[str, bool]:
        kind = event.event_kind
        handler = EVENT_HANDLERS[kind]
        payload = parse_event_payload(event)
        t0 = time.monotonic()

        with start_span(
            "agentlens.ingest_event",
            {
                "agentlens.session_id": event.sessionId,
                "agentlens.kind": event.kind,
                "agentlens.sequence": event.sequence,
            },
        ):
            try:
                async with transaction(self.db) as conn:
                    ctx = IngestContext.for_connection(conn)
                    await ctx.events.lock_session(event.sessionId)
                    appended = await ctx.events.append(event_record(event))
                    await handler(ctx, event, payload)
                    await update_session_timing(ctx, event, payload)
            except Exception:
                record_ingestion_failure(kind.value, source=event.source)
                logger.exception(
                    f"Ingestion failed for {event.sessionId}#{event.sequence} ({event.kind})"
                )
                raise

        elapsed_ms = (time.monotonic() - t0) * 1000
        result = "applied" if appended else "duplicate"
        if not appended:
            logger.debug(f"Duplicate event {event.sessionId}#{event.sequence} re-applied")
        record_ingestion(kind.value, result, elapsed_ms, source=event.source)
        for completion in ctx.completions:
            self._record_completion(completion)

        return {"ok": True}

    @staticmethod
    def _record_completion(completion: Completion) -> None:
        record_tool_result(
            completion.tool_name,
            "error" if completion.is_error else "success",
            source=completion.source,
            duration_ms=completion.duration_ms,
        )
        record_token_cost(
            source=completion.source,
            model=completion.model,
            tool=completion.tool_name,
            prompt_tokens=usage_value(completion.token_usage, "promptTokens"),
            completion_tokens=usage_value(completion.token_usage, "completionTokens"),
            cost_usd=completion.cost_usd or 0.0,
        )
