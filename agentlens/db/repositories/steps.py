"""SQLite implementation of the step store."""
from __future__ import annotations

import aiosqlite

from agentlens.db.repositories.rows import STEPS


class SqliteStepRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, session_id: str, step_index: int) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM agent_steps WHERE session_id = ? AND step_index = ?",
            (session_id, step_index),
        ) as cur:
            row = await cur.fetchone()
        return STEPS.decode(row) if row else None

    async def upsert(self, step: dict) -> None:
        data = STEPS.encode(step)
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        updates = ", ".join(
            f"{column}=excluded.{column}" for column in data if column not in STEPS.key
        )
        await self.db.execute(
            f"""INSERT INTO agent_steps ({columns}) VALUES ({placeholders})
                ON CONFLICT(session_id, step_index) DO UPDATE SET {updates}""",
            tuple(data.values()),
        )

    async def list_for_session(self, session_id: str, limit: int = 500) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM agent_steps WHERE session_id = ? ORDER BY step_index ASC LIMIT ?",
            (session_id, limit),
        ) as cur:
            rows = await cur.fetchall()
        return [STEPS.decode(r) for r in rows]
