"""PostgreSQL implementation of the batch-run ledger."""
from __future__ import annotations

from typing import Any

from agentlens.db.repositories.rows import BATCH_RUNS


class PostgresBatchRunRepository:
    def __init__(self, db: Any):
        self.db = db

    async def get(self, row_id: int) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM agent_batch_runs WHERE id = $1", row_id)
        return BATCH_RUNS.decode(row) if row else None

    async def insert(self, batch: dict) -> int:
        data = BATCH_RUNS.encode(batch, bool_as_int=False)
        columns = ", ".join(data)
        placeholders = ", ".join(f"${i}" for i in range(1, len(data) + 1))
        return await self.db.fetchval(
            f"INSERT INTO agent_batch_runs ({columns}) VALUES ({placeholders}) RETURNING id",
            *data.values(),
        )

    async def patch(self, row_id: int, fields: dict) -> None:
        if not fields:
            return
        data = BATCH_RUNS.encode(fields, bool_as_int=False)
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(data, start=1))
        await self.db.execute(
            f"UPDATE agent_batch_runs SET {assignments} WHERE id = ${len(data) + 1}",
            *data.values(), row_id,
        )

    async def delete(self, row_id: int) -> bool:
        deleted = await self.db.fetchval("DELETE FROM agent_batch_runs WHERE id = $1 RETURNING id", row_id)
        return deleted is not None

    async def list_recent(self, limit: int) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM agent_batch_runs ORDER BY started_at DESC, id DESC LIMIT $1",
            limit,
        )
        return [BATCH_RUNS.decode(r) for r in rows]
