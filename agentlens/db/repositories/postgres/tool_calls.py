"""PostgreSQL implementation of the tool-call store."""
from __future__ import annotations

from typing import Any

from agentlens.db.repositories.rows import TOOL_CALLS


class PostgresToolCallRepository:
    """Tool-call lifecycle rows keyed by (session_id, tool_call_id)."""

    def __init__(self, db: Any):
        self.db = db

    async def get(self, session_id: str, tool_call_id: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM agent_tool_calls WHERE session_id = $1 AND tool_call_id = $2",
            session_id, tool_call_id,
        )
        return TOOL_CALLS.decode(row) if row else None

    async def upsert(self, tool_call: dict) -> None:
        data = TOOL_CALLS.encode(tool_call, bool_as_int=False)
        columns = ", ".join(data)
        placeholders = ", ".join(f"${i}" for i in range(1, len(data) + 1))
        updates = ", ".join(
            f"{column}=EXCLUDED.{column}" for column in data if column not in TOOL_CALLS.key
        )
        await self.db.execute(
            f"""INSERT INTO agent_tool_calls ({columns}) VALUES ({placeholders})
                ON CONFLICT (session_id, tool_call_id) DO UPDATE SET {updates}""",
            *data.values(),
        )

    async def list_for_session(self, session_id: str, limit: int = 1000) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM agent_tool_calls WHERE session_id = $1 ORDER BY created_at ASC LIMIT $2",
            session_id, limit,
        )
        return [TOOL_CALLS.decode(r) for r in rows]

    async def list_recent_completed(self, limit: int = 25) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM agent_tool_calls ORDER BY completed_at DESC NULLS LAST LIMIT $1",
            limit,
        )
        return [TOOL_CALLS.decode(r) for r in rows]

    async def list_for_sessions(self, session_ids: list[str]) -> list[dict]:
        if not session_ids:
            return []
        rows = await self.db.fetch(
            """SELECT * FROM agent_tool_calls WHERE session_id = ANY($1::text[])
               ORDER BY session_id, started_at ASC NULLS FIRST""",
            list(session_ids),
        )
        return [TOOL_CALLS.decode(r) for r in rows]
