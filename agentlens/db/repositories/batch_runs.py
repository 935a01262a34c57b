"""SQLite implementation of the batch-run ledger."""
from __future__ import annotations

import aiosqlite

from agentlens.db.repositories.rows import BATCH_RUNS


class SqliteBatchRunRepository:
    """One row per scripted batch of agent runs, addressed by surrogate ``id``."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, row_id: int) -> dict | None:
        async with self.db.execute("SELECT * FROM agent_batch_runs WHERE id = ?", (row_id,)) as cur:
            row = await cur.fetchone()
        return BATCH_RUNS.decode(row) if row else None

    async def insert(self, batch: dict) -> int:
        data = BATCH_RUNS.encode(batch)
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        async with self.db.execute(
            f"INSERT INTO agent_batch_runs ({columns}) VALUES ({placeholders})",
            tuple(data.values()),
        ) as cur:
            return cur.lastrowid

    async def patch(self, row_id: int, fields: dict) -> None:
        if not fields:
            return
        data = BATCH_RUNS.encode(fields)
        assignments = ", ".join(f"{column} = ?" for column in data)
        await self.db.execute(
            f"UPDATE agent_batch_runs SET {assignments} WHERE id = ?",
            (*data.values(), row_id),
        )

    async def delete(self, row_id: int) -> bool:
        async with self.db.execute("DELETE FROM agent_batch_runs WHERE id = ?", (row_id,)) as cur:
            return cur.rowcount > 0

    async def list_recent(self, limit: int) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM agent_batch_runs ORDER BY started_at DESC, id DESC LIMIT ?", (limit,)
        ) as cur:
            rows = await cur.fetchall()
        return [BATCH_RUNS.decode(r) for r in rows]
