"""SQLite implementation of the append-only event log."""
from __future__ import annotations

import aiosqlite

from agentlens.db.repositories.rows import EVENTS


class SqliteEventRepository:
    """Events keyed by (session_id, sequence). Never updated or deleted."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def lock_session(self, session_id: str) -> None:
        # Writers are already serialized on the shared connection.
        return None

    async def append(self, event: dict) -> bool:
        """Insert the event; ``False`` when (session_id, sequence) already exists."""
        data = EVENTS.encode(event)
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        async with self.db.execute(
            f"""INSERT INTO agent_events ({columns}) VALUES ({placeholders})
                ON CONFLICT(session_id, sequence) DO NOTHING""",
            tuple(data.values()),
        ) as cur:
            return cur.rowcount > 0

    async def get(self, session_id: str, sequence: int) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM agent_events WHERE session_id = ? AND sequence = ?",
            (session_id, sequence),
        ) as cur:
            row = await cur.fetchone()
        return EVENTS.decode(row) if row else None

    async def list_for_session(self, session_id: str, limit: int = 2000) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM agent_events WHERE session_id = ? ORDER BY sequence ASC LIMIT ?",
            (session_id, limit),
        ) as cur:
            rows = await cur.fetchall()
        return [EVENTS.decode(r) for r in rows]
