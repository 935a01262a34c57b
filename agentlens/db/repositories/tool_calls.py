"""SQLite implementation of the tool-call store."""
from __future__ import annotations

import aiosqlite

from agentlens.db.repositories.rows import TOOL_CALLS


class SqliteToolCallRepository:
    """Tool-call lifecycle rows keyed by (session_id, tool_call_id)."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, session_id: str, tool_call_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM agent_tool_calls WHERE session_id = ? AND tool_call_id = ?",
            (session_id, tool_call_id),
        ) as cur:
            row = await cur.fetchone()
        return TOOL_CALLS.decode(row) if row else None

    async def upsert(self, tool_call: dict) -> None:
        data = TOOL_CALLS.encode(tool_call)
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        updates = ", ".join(
            f"{column}=excluded.{column}" for column in data if column not in TOOL_CALLS.key
        )
        await self.db.execute(
            f"""INSERT INTO agent_tool_calls ({columns}) VALUES ({placeholders})
                ON CONFLICT(session_id, tool_call_id) DO UPDATE SET {updates}""",
            tuple(data.values()),
        )

    async def list_for_session(self, session_id: str, limit: int = 1000) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM agent_tool_calls WHERE session_id = ? ORDER BY created_at ASC LIMIT ?",
            (session_id, limit),
        ) as cur:
            rows = await cur.fetchall()
        return [TOOL_CALLS.decode(r) for r in rows]

    async def list_recent_completed(self, limit: int = 25) -> list[dict]:
        """Newest rows by ``completed_at``; rows never completed sort last."""
        async with self.db.execute(
            """SELECT * FROM agent_tool_calls
               ORDER BY completed_at IS NULL, completed_at DESC LIMIT ?""",
            (limit,),
        ) as cur:
            rows = await cur.fetchall()
        return [TOOL_CALLS.decode(r) for r in rows]

    async def list_for_sessions(self, session_ids: list[str]) -> list[dict]:
        if not session_ids:
            return []
        placeholders = ", ".join("?" for _ in session_ids)
        async with self.db.execute(
            f"""SELECT * FROM agent_tool_calls WHERE session_id IN ({placeholders})
                ORDER BY session_id, started_at ASC""",
            tuple(session_ids),
        ) as cur:
            rows = await cur.fetchall()
        return [TOOL_CALLS.decode(r) for r in rows]
