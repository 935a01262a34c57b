"""Windowed summary and per-tool breakdown routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from agentlens.db import connection
from agentlens.models import MetricsSummary, ToolBreakdown
from agentlens.routers.metrics_gate import require_metrics_enabled
from agentlens.services import session_queries

analytics_router = APIRouter(
    prefix="/api/agent-metrics",
    tags=["agent-metrics"],
    dependencies=[Depends(require_metrics_enabled)],
)


@analytics_router.get("/summary", response_model=MetricsSummary)
async def get_summary(window_ms: int | None = Query(None, ge=0)):
    """Totals and averages over the 200 newest sessions, optionally windowed by creation time."""
    db = await connection.get_connection()
    return await session_queries.get_summary(db, window_ms)


@analytics_router.get("/tools", response_model=ToolBreakdown)
async def get_tool_breakdown(window_ms: int | None = Query(None, ge=0)):
    db = await connection.get_connection()
    return await session_queries.get_tool_breakdown(db, window_ms)
