"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any
import aiosqlite

from agentlens.db.repositories.batch_runs import SqliteBatchRunRepository
from agentlens.db.repositories.events import SqliteEventRepository
from agentlens.db.repositories.sessions import SqliteSessionRepository
from agentlens.db.repositories.steps import SqliteStepRepository
from agentlens.db.repositories.tool_calls import SqliteToolCallRepository


def get_event_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteEventRepository(db)
    from agentlens.db.repositories.postgres.events import PostgresEventRepository
    return PostgresEventRepository(db)


def get_session_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteSessionRepository(db)
    from agentlens.db.repositories.postgres.sessions import PostgresSessionRepository
    return PostgresSessionRepository(db)


def get_step_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteStepRepository(db)
    from agentlens.db.repositories.postgres.steps import PostgresStepRepository
    return PostgresStepRepository(db)


def get_tool_call_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteToolCallRepository(db)
    from agentlens.db.repositories.postgres.tool_calls import PostgresToolCallRepository
    return PostgresToolCallRepository(db)


def get_batch_run_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteBatchRunRepository(db)
    from agentlens.db.repositories.postgres.batch_runs import PostgresBatchRunRepository
    return PostgresBatchRunRepository(db)
