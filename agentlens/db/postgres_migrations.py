"""PostgreSQL schema creation and versioning.

Mirrors ``sqlite_migrations`` with Postgres types. Idempotent.
"""
from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger("agentlens.db")

SCHEMA_VERSION = 4

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS agent_events (
    id              BIGSERIAL PRIMARY KEY,
    session_id      TEXT NOT NULL,
    request_id      TEXT NOT NULL,
    sequence        BIGINT NOT NULL,
    timestamp       BIGINT NOT NULL,
    kind            TEXT NOT NULL,
    payload_json    TEXT NOT NULL DEFAULT '{}',
    source          TEXT,
    model           TEXT,
    thread_id       TEXT,
    persona_mode    BOOLEAN,
    user_identifier TEXT,
    dedupe_key      TEXT,
    created_at      BIGINT NOT NULL,
    UNIQUE (session_id, sequence)
);

CREATE TABLE IF NOT EXISTS agent_sessions (
    id                         BIGSERIAL PRIMARY KEY,
    session_id                 TEXT NOT NULL UNIQUE,
    request_id                 TEXT NOT NULL,
    user_identifier            TEXT,
    thread_id                  TEXT,
    model                      TEXT,
    persona_mode               BOOLEAN DEFAULT FALSE,
    tool_names_json            TEXT,
    attachments_count          INTEGER,
    message_previews_json      TEXT,
    step_count                 INTEGER DEFAULT 0,
    tool_call_count            INTEGER DEFAULT 0,
    estimated_usage_json       TEXT,
    actual_usage_json          TEXT,
    estimated_cost_usd         DOUBLE PRECISION,
    actual_cost_usd            DOUBLE PRECISION,
    session_started_at         BIGINT,
    session_finished_at        BIGINT,
    first_event_at             BIGINT,
    last_event_at              BIGINT,
    first_user_message_at      BIGINT,
    last_assistant_message_at  BIGINT,
    end_to_end_started_at      BIGINT,
    end_to_end_finished_at     BIGINT,
    end_to_end_duration_ms     DOUBLE PRECISION,
    tags_json                  TEXT,
    created_at                 BIGINT NOT NULL,
    updated_at                 BIGINT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_request_id ON agent_sessions(request_id);
CREATE INDEX IF NOT EXISTS idx_sessions_created ON agent_sessions(created_at DESC);

CREATE TABLE IF NOT EXISTS agent_steps (
    session_id              TEXT NOT NULL,
    step_index              INTEGER NOT NULL,
    request_id              TEXT NOT NULL,
    timestamp               BIGINT NOT NULL,
    text_length             INTEGER DEFAULT 0,
    tool_calls_count        INTEGER DEFAULT 0,
    tool_results_count      INTEGER DEFAULT 0,
    finish_reason           TEXT,
    usage_json              TEXT,
    generated_text_preview  TEXT,
    created_at              BIGINT NOT NULL,
    PRIMARY KEY (session_id, step_index)
);

CREATE TABLE IF NOT EXISTS agent_tool_calls (
    session_id             TEXT NOT NULL,
    tool_call_id           TEXT NOT NULL,
    request_id             TEXT NOT NULL,
    tool_name              TEXT NOT NULL DEFAULT 'unknown',
    step_index             INTEGER DEFAULT 0,
    status                 TEXT NOT NULL,
    started_at             DOUBLE PRECISION,
    completed_at           BIGINT,
    duration_ms            DOUBLE PRECISION,
    input_summary_json     TEXT,
    result_summary_json    TEXT,
    token_usage_json       TEXT,
    cost_usd               DOUBLE PRECISION,
    is_error               BOOLEAN,
    outbound_sequence      BIGINT,
    outbound_at            BIGINT,
    outbound_payload_json  TEXT,
    inbound_sequence       BIGINT,
    inbound_at             BIGINT,
    inbound_payload_json   TEXT,
    created_at             BIGINT NOT NULL,
    updated_at             BIGINT NOT NULL,
    PRIMARY KEY (session_id, tool_call_id)
);

CREATE INDEX IF NOT EXISTS idx_tool_calls_completed ON agent_tool_calls(completed_at DESC);

CREATE TABLE IF NOT EXISTS agent_batch_runs (
    id                BIGSERIAL PRIMARY KEY,
    name              TEXT,
    batch_id          TEXT NOT NULL,
    prompts_json      TEXT NOT NULL DEFAULT '[]',
    prompt_count      BIGINT NOT NULL DEFAULT 0,
    total_runs        BIGINT NOT NULL DEFAULT 0,
    runs_per_prompt   BIGINT NOT NULL DEFAULT 1,
    delay_ms          BIGINT NOT NULL DEFAULT 0,
    restore_baseline  BOOLEAN NOT NULL DEFAULT FALSE,
    tags_json         TEXT,
    started_at        BIGINT NOT NULL,
    finished_at       BIGINT,
    success_count     BIGINT NOT NULL DEFAULT 0,
    failure_count     BIGINT NOT NULL DEFAULT 0,
    status            TEXT NOT NULL DEFAULT 'running',
    created_at        BIGINT NOT NULL,
    updated_at        BIGINT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_batch_runs_started ON agent_batch_runs(started_at DESC);
"""


async def run_migrations(db: Any) -> None:
    """Create all tables on a pool or connection. Idempotent."""
    async with db.acquire() as conn:
        await conn.execute(_TABLES)
        current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
        if current_version >= SCHEMA_VERSION:
            logger.info(f"Schema is up to date (version {current_version})")
            return

        logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")
        await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
        logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
