"""PostgreSQL implementation of the session aggregate store."""
from __future__ import annotations

from typing import Any

from agentlens.db.repositories.rows import SESSIONS


class PostgresSessionRepository:
    """One row per agent session, addressed by surrogate ``id``."""

    def __init__(self, db: Any):
        self.db = db

    async def get_by_session_id(self, session_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM agent_sessions WHERE session_id = $1", session_id)
        return SESSIONS.decode(row) if row else None

    async def get_by_request_id(self, request_id: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM agent_sessions WHERE request_id = $1 ORDER BY id ASC LIMIT 1",
            request_id,
        )
        return SESSIONS.decode(row) if row else None

    async def get(self, row_id: int) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM agent_sessions WHERE id = $1", row_id)
        return SESSIONS.decode(row) if row else None

    async def insert(self, session: dict) -> dict:
        data = SESSIONS.encode(session, bool_as_int=False)
        columns = ", ".join(data)
        placeholders = ", ".join(f"${i}" for i in range(1, len(data) + 1))
        row = await self.db.fetchrow(
            f"INSERT INTO agent_sessions ({columns}) VALUES ({placeholders}) RETURNING *",
            *data.values(),
        )
        return SESSIONS.decode(row)

    async def patch(self, row_id: int, fields: dict) -> None:
        if not fields:
            return
        data = SESSIONS.encode(fields, bool_as_int=False)
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(data, start=1))
        await self.db.execute(
            f"UPDATE agent_sessions SET {assignments} WHERE id = ${len(data) + 1}",
            *data.values(), row_id,
        )

    async def list_recent(self, limit: int) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM agent_sessions ORDER BY created_at DESC, id DESC LIMIT $1",
            limit,
        )
        return [SESSIONS.decode(r) for r in rows]

    async def list_missing_timing(self, limit: int) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT * FROM agent_sessions
               WHERE end_to_end_started_at IS NULL
                  OR end_to_end_finished_at IS NULL
                  OR end_to_end_duration_ms IS NULL
               ORDER BY id ASC LIMIT $1""",
            limit,
        )
        return [SESSIONS.decode(r) for r in rows]
