"""Row <-> record translation shared by the SQLite and Postgres repositories.

Repositories hand out plain snake_case dicts. Structured values live in
``<name>_json`` TEXT columns and are decoded under ``<name>``; boolean flags
are stored as INTEGER on SQLite and BOOLEAN on Postgres.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

logger = logging.getLogger("agentlens.db")


def _safe_json(value: Any, default: Any = None) -> Any:
    if value is None or value == "":
        return default
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        logger.warning(f"Discarding undecodable JSON column value: {value[:80]!r}")
        return default


@dataclass(frozen=True)
class TableCodec:
    table: str
    columns: tuple[str, ...]
    json_fields: tuple[str, ...] = ()
    bool_fields: tuple[str, ...] = ()
    key: tuple[str, ...] = field(default_factory=tuple)

    def column_for(self, name: str) -> str:
        if name in self.json_fields:
            return f"{name}_json"
        if name in self.columns:
            return name
        raise ValueError(f"Unknown column for {self.table}: {name}")

    def encode(self, record: Mapping[str, Any], *, bool_as_int: bool = True) -> dict[str, Any]:
        """Map a record to ``{column: stored value}``."""
        encoded: dict[str, Any] = {}
        for name, value in record.items():
            if name == "id":
                continue
            column = self.column_for(name)
            if name in self.json_fields:
                value = None if value is None else json.dumps(value)
            elif name in self.bool_fields and value is not None:
                value = int(bool(value)) if bool_as_int else bool(value)
            encoded[column] = value
        return encoded

    def decode(self, row: Any) -> dict[str, Any]:
        raw = dict(row)
        record: dict[str, Any] = {}
        for column, value in raw.items():
            if column.endswith("_json") and column[:-5] in self.json_fields:
                record[column[:-5]] = _safe_json(value)
            elif column in self.bool_fields:
                record[column] = None if value is None else bool(value)
            else:
                record[column] = value
        return record


EVENTS = TableCodec(
    table="agent_events",
    columns=(
        "session_id", "request_id", "sequence", "timestamp", "kind", "source",
        "model", "thread_id", "persona_mode", "user_identifier", "dedupe_key", "created_at",
    ),
    json_fields=("payload",),
    bool_fields=("persona_mode",),
    key=("session_id", "sequence"),
)

SESSIONS = TableCodec(
    table="agent_sessions",
    columns=(
        "session_id", "request_id", "user_identifier", "thread_id", "model", "persona_mode",
        "attachments_count", "step_count", "tool_call_count",
        "estimated_cost_usd", "actual_cost_usd",
        "session_started_at", "session_finished_at", "first_event_at", "last_event_at",
        "first_user_message_at", "last_assistant_message_at",
        "end_to_end_started_at", "end_to_end_finished_at", "end_to_end_duration_ms",
        "created_at", "updated_at",
    ),
    json_fields=("tool_names", "message_previews", "estimated_usage", "actual_usage", "tags"),
    bool_fields=("persona_mode",),
    key=("id",),
)

STEPS = TableCodec(
    table="agent_steps",
    columns=(
        "session_id", "step_index", "request_id", "timestamp", "text_length",
        "tool_calls_count", "tool_results_count", "finish_reason",
        "generated_text_preview", "created_at",
    ),
    json_fields=("usage",),
    key=("session_id", "step_index"),
)

TOOL_CALLS = TableCodec(
    table="agent_tool_calls",
    columns=(
        "session_id", "tool_call_id", "request_id", "tool_name", "step_index", "status",
        "started_at", "completed_at", "duration_ms", "cost_usd", "is_error",
        "outbound_sequence", "outbound_at", "inbound_sequence", "inbound_at",
        "created_at", "updated_at",
    ),
    json_fields=("input_summary", "result_summary", "token_usage", "outbound_payload", "inbound_payload"),
    bool_fields=("is_error",),
    key=("session_id", "tool_call_id"),
)

BATCH_RUNS = TableCodec(
    table="agent_batch_runs",
    columns=(
        "name", "batch_id", "prompt_count", "total_runs", "runs_per_prompt", "delay_ms",
        "restore_baseline", "started_at", "finished_at", "success_count", "failure_count",
        "status", "created_at", "updated_at",
    ),
    json_fields=("prompts", "tags"),
    bool_fields=("restore_baseline",),
    key=("id",),
)
