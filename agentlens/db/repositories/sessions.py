"""SQLite implementation of the session aggregate store."""
from __future__ import annotations

import aiosqlite

from agentlens.db.repositories.rows import SESSIONS


class SqliteSessionRepository:
    """One row per agent session, addressed by surrogate ``id``."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_by_session_id(self, session_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM agent_sessions WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
        return SESSIONS.decode(row) if row else None

    async def get_by_request_id(self, request_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM agent_sessions WHERE request_id = ? ORDER BY id ASC LIMIT 1",
            (request_id,),
        ) as cur:
            row = await cur.fetchone()
        return SESSIONS.decode(row) if row else None

    async def get(self, row_id: int) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM agent_sessions WHERE id = ?", (row_id,)
        ) as cur:
            row = await cur.fetchone()
        return SESSIONS.decode(row) if row else None

    async def insert(self, session: dict) -> dict:
        data = SESSIONS.encode(session)
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        async with self.db.execute(
            f"INSERT INTO agent_sessions ({columns}) VALUES ({placeholders})",
            tuple(data.values()),
        ) as cur:
            row_id = cur.lastrowid
        stored = await self.get(row_id)
        assert stored is not None
        return stored

    async def patch(self, row_id: int, fields: dict) -> None:
        """Update only the given fields; a no-op for an empty patch."""
        if not fields:
            return
        data = SESSIONS.encode(fields)
        assignments = ", ".join(f"{column} = ?" for column in data)
        await self.db.execute(
            f"UPDATE agent_sessions SET {assignments} WHERE id = ?",
            (*data.values(), row_id),
        )

    async def list_recent(self, limit: int) -> list[dict]:
        """Newest sessions by ``created_at``."""
        async with self.db.execute(
            "SELECT * FROM agent_sessions ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        ) as cur:
            rows = await cur.fetchall()
        return [SESSIONS.decode(r) for r in rows]

    async def list_missing_timing(self, limit: int) -> list[dict]:
        async with self.db.execute(
            """SELECT * FROM agent_sessions
               WHERE end_to_end_started_at IS NULL
                  OR end_to_end_finished_at IS NULL
                  OR end_to_end_duration_ms IS NULL
               ORDER BY id ASC LIMIT ?""",
            (limit,),
        ) as cur:
            rows = await cur.fetchall()
        return [SESSIONS.decode(r) for r in rows]
