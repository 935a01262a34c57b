"""Event ingestion router."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from agentlens.db.ingest_engine import IngestEngine
from agentlens.models import AgentEvent, IngestResult
from agentlens.routers.metrics_gate import require_metrics_enabled

events_router = APIRouter(
    prefix="/api/agent-metrics",
    tags=["agent-metrics"],
    dependencies=[Depends(require_metrics_enabled)],
)


def _get_ingest_engine(request: Request) -> IngestEngine:
    engine = getattr(request.app.state, "ingest_engine", None)
    if not engine:
        raise HTTPException(status_code=503, detail="Ingest engine not initialized")
    return engine


@events_router.post("/events", response_model=IngestResult)
async def ingest_event(request: Request, event: AgentEvent):
    """Append one agent event and fold it into the session aggregates.

    Re-delivering an event already in the log is accepted and changes nothing.
    """
    engine = _get_ingest_engine(request)
    result = await engine.ingest_event(event)
    return IngestResult(**result)
