"""PostgreSQL implementation of the step store."""
from __future__ import annotations

from typing import Any

from agentlens.db.repositories.rows import STEPS


class PostgresStepRepository:
    def __init__(self, db: Any):
        self.db = db

    async def get(self, session_id: str, step_index: int) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM agent_steps WHERE session_id = $1 AND step_index = $2",
            session_id, step_index,
        )
        return STEPS.decode(row) if row else None

    async def upsert(self, step: dict) -> None:
        data = STEPS.encode(step, bool_as_int=False)
        columns = ", ".join(data)
        placeholders = ", ".join(f"${i}" for i in range(1, len(data) + 1))
        updates = ", ".join(
            f"{column}=EXCLUDED.{column}" for column in data if column not in STEPS.key
        )
        await self.db.execute(
            f"""INSERT INTO agent_steps ({columns}) VALUES ({placeholders})
                ON CONFLICT (session_id, step_index) DO UPDATE SET {updates}""",
            *data.values(),
        )

    async def list_for_session(self, session_id: str, limit: int = 500) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM agent_steps WHERE session_id = $1 ORDER BY step_index ASC LIMIT $2",
            session_id, limit,
        )
        return [STEPS.decode(r) for r in rows]
