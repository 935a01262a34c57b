"""Session listing, timeline and tag routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from agentlens.db import connection
from agentlens.models import (
    SessionSummary,
    SessionTagCreate,
    SessionTimeline,
    SessionTitleUpdate,
    TagMutationResult,
)
from agentlens.routers.metrics_gate import require_metrics_enabled
from agentlens.services import session_queries

sessions_router = APIRouter(
    prefix="/api/agent-metrics/sessions",
    tags=["agent-metrics"],
    dependencies=[Depends(require_metrics_enabled)],
)


def _raise_for_tag_error(session_id: str, result: TagMutationResult) -> TagMutationResult:
    if result.error == "not_found":
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    if result.error == "invalid_tag":
        raise HTTPException(status_code=400, detail="Tag must not be empty")
    return result


@sessions_router.get("", response_model=list[SessionSummary])
async def list_sessions(limit: int | None = Query(None)):
    """Most recently created sessions, newest first (1-200, default 25)."""
    db = await connection.get_connection()
    return await session_queries.list_sessions(db, limit)


@sessions_router.get("/{session_id}", response_model=SessionTimeline)
async def get_session_timeline(session_id: str):
    db = await connection.get_connection()
    timeline = await session_queries.get_session_timeline(db, session_id)
    if timeline is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return timeline


@sessions_router.put("/{session_id}/title", response_model=TagMutationResult)
async def set_session_title(session_id: str, body: SessionTitleUpdate):
    """Set or clear (empty / null) the session's custom title."""
    db = await connection.get_connection()
    result = await session_queries.set_session_tag(db, session_id, body.tag)
    return _raise_for_tag_error(session_id, result)


@sessions_router.post("/{session_id}/tags", response_model=TagMutationResult)
async def add_session_tag(session_id: str, body: SessionTagCreate):
    db = await connection.get_connection()
    result = await session_queries.add_session_tag(db, session_id, body.tag)
    return _raise_for_tag_error(session_id, result)


@sessions_router.delete("/{session_id}/tags/{tag}", response_model=TagMutationResult)
async def remove_session_tag(session_id: str, tag: str):
    db = await connection.get_connection()
    result = await session_queries.remove_session_tag(db, session_id, tag)
    return _raise_for_tag_error(session_id, result)
