"""PostgreSQL implementation of the append-only event log."""
from __future__ import annotations

from typing import Any

from agentlens.db.repositories.rows import EVENTS


def _placeholders(count: int) -> str:
    return ", ".join(f"${i}" for i in range(1, count + 1))


class PostgresEventRepository:
    """Events keyed by (session_id, sequence). Never updated or deleted."""

    def __init__(self, db: Any):
        self.db = db

    async def lock_session(self, session_id: str) -> None:
        """Serialize writers of one session until the surrounding transaction ends."""
        await self.db.execute("SELECT pg_advisory_xact_lock(hashtext($1))", session_id)

    async def append(self, event: dict) -> bool:
        data = EVENTS.encode(event, bool_as_int=False)
        columns = ", ".join(data)
        inserted = await self.db.fetchval(
            f"""INSERT INTO agent_events ({columns}) VALUES ({_placeholders(len(data))})
                ON CONFLICT (session_id, sequence) DO NOTHING
                RETURNING id""",
            *data.values(),
        )
        return inserted is not None

    async def get(self, session_id: str, sequence: int) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM agent_events WHERE session_id = $1 AND sequence = $2",
            session_id, sequence,
        )
        return EVENTS.decode(row) if row else None

    async def list_for_session(self, session_id: str, limit: int = 2000) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM agent_events WHERE session_id = $1 ORDER BY sequence ASC LIMIT $2",
            session_id, limit,
        )
        return [EVENTS.decode(r) for r in rows]
