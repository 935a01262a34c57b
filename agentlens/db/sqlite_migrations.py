"""Database schema creation and versioning.

All CREATE TABLE statements for the event log and its materialized views.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("agentlens.db")

SCHEMA_VERSION = 4

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Event log (append-only) ──────────────────────────────────────
CREATE TABLE IF NOT EXISTS agent_events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id      TEXT NOT NULL,
    request_id      TEXT NOT NULL,
    sequence        INTEGER NOT NULL,
    timestamp       INTEGER NOT NULL,
    kind            TEXT NOT NULL,
    payload_json    TEXT NOT NULL DEFAULT '{}',
    source          TEXT,
    model           TEXT,
    thread_id       TEXT,
    persona_mode    INTEGER,
    user_identifier TEXT,
    dedupe_key      TEXT,
    created_at      INTEGER NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_events_session_sequence
    ON agent_events(session_id, sequence);

-- ── 2. Sessions ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS agent_sessions (
    id                         INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id                 TEXT NOT NULL,
    request_id                 TEXT NOT NULL,
    user_identifier            TEXT,
    thread_id                  TEXT,
    model                      TEXT,
    persona_mode               INTEGER DEFAULT 0,
    tool_names_json            TEXT,
    attachments_count          INTEGER,
    message_previews_json      TEXT,
    step_count                 INTEGER DEFAULT 0,
    tool_call_count            INTEGER DEFAULT 0,
    estimated_usage_json       TEXT,
    actual_usage_json          TEXT,
    estimated_cost_usd         REAL,
    actual_cost_usd            REAL,
    session_started_at         INTEGER,
    session_finished_at        INTEGER,
    first_event_at             INTEGER,
    last_event_at              INTEGER,
    first_user_message_at      INTEGER,
    last_assistant_message_at  INTEGER,
    end_to_end_started_at      INTEGER,
    end_to_end_finished_at     INTEGER,
    end_to_end_duration_ms     REAL,
    tags_json                  TEXT,
    created_at                 INTEGER NOT NULL,
    updated_at                 INTEGER NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_session_id ON agent_sessions(session_id);
CREATE INDEX IF NOT EXISTS idx_sessions_request_id ON agent_sessions(request_id);
CREATE INDEX IF NOT EXISTS idx_sessions_created ON agent_sessions(created_at DESC);

-- ── 3. Steps ───────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS agent_steps (
    session_id              TEXT NOT NULL,
    step_index              INTEGER NOT NULL,
    request_id              TEXT NOT NULL,
    timestamp               INTEGER NOT NULL,
    text_length             INTEGER DEFAULT 0,
    tool_calls_count        INTEGER DEFAULT 0,
    tool_results_count      INTEGER DEFAULT 0,
    finish_reason           TEXT,
    usage_json              TEXT,
    generated_text_preview  TEXT,
    created_at              INTEGER NOT NULL,
    PRIMARY KEY (session_id, step_index)
);

-- ── 4. Tool calls ──────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS agent_tool_calls (
    session_id             TEXT NOT NULL,
    tool_call_id           TEXT NOT NULL,
    request_id             TEXT NOT NULL,
    tool_name              TEXT NOT NULL DEFAULT 'unknown',
    step_index             INTEGER DEFAULT 0,
    status                 TEXT NOT NULL,
    started_at             REAL,
    completed_at           INTEGER,
    duration_ms            REAL,
    input_summary_json     TEXT,
    result_summary_json    TEXT,
    token_usage_json       TEXT,
    cost_usd               REAL,
    is_error               INTEGER,
    outbound_sequence      INTEGER,
    outbound_at            INTEGER,
    outbound_payload_json  TEXT,
    inbound_sequence       INTEGER,
    inbound_at             INTEGER,
    inbound_payload_json   TEXT,
    created_at             INTEGER NOT NULL,
    updated_at             INTEGER NOT NULL,
    PRIMARY KEY (session_id, tool_call_id)
);

CREATE INDEX IF NOT EXISTS idx_tool_calls_completed ON agent_tool_calls(completed_at DESC);

-- ── 5. Batch runs ──────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS agent_batch_runs (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    name              TEXT,
    batch_id          TEXT NOT NULL,
    prompts_json      TEXT NOT NULL DEFAULT '[]',
    prompt_count      INTEGER NOT NULL DEFAULT 0,
    total_runs        INTEGER NOT NULL DEFAULT 0,
    runs_per_prompt   INTEGER NOT NULL DEFAULT 1,
    delay_ms          INTEGER NOT NULL DEFAULT 0,
    restore_baseline  INTEGER NOT NULL DEFAULT 0,
    tags_json         TEXT,
    started_at        INTEGER NOT NULL,
    finished_at       INTEGER,
    success_count     INTEGER NOT NULL DEFAULT 0,
    failure_count     INTEGER NOT NULL DEFAULT 0,
    status            TEXT NOT NULL DEFAULT 'running',
    created_at        INTEGER NOT NULL,
    updated_at        INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_batch_runs_started ON agent_batch_runs(started_at DESC);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)

    # Explicit table upgrades for databases created before timing derivation
    # (v2) and raw tool-call payload snapshots (v3).
    await _ensure_column(db, "agent_sessions", "first_user_message_at", "INTEGER")
    await _ensure_column(db, "agent_sessions", "last_assistant_message_at", "INTEGER")
    await _ensure_column(db, "agent_sessions", "end_to_end_started_at", "INTEGER")
    await _ensure_column(db, "agent_sessions", "end_to_end_finished_at", "INTEGER")
    await _ensure_column(db, "agent_sessions", "end_to_end_duration_ms", "REAL")
    await _ensure_column(db, "agent_tool_calls", "outbound_sequence", "INTEGER")
    await _ensure_column(db, "agent_tool_calls", "outbound_at", "INTEGER")
    await _ensure_column(db, "agent_tool_calls", "outbound_payload_json", "TEXT")
    await _ensure_column(db, "agent_tool_calls", "inbound_sequence", "INTEGER")
    await _ensure_column(db, "agent_tool_calls", "inbound_at", "INTEGER")
    await _ensure_column(db, "agent_tool_calls", "inbound_payload_json", "TEXT")

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
