"""Batch-run ledger routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from agentlens.db import connection
from agentlens.models import (
    BatchRunMutationResult,
    BatchRunRecord,
    BatchRunResultUpdate,
    BatchRunStart,
)
from agentlens.routers.metrics_gate import require_metrics_enabled
from agentlens.services import batch_runs

batch_runs_router = APIRouter(
    prefix="/api/agent-metrics/batches",
    tags=["agent-metrics"],
    dependencies=[Depends(require_metrics_enabled)],
)


def _raise_if_missing(batch_run_id: int, result: BatchRunMutationResult) -> BatchRunMutationResult:
    if result.error == "not_found":
        raise HTTPException(status_code=404, detail=f"Batch run {batch_run_id} not found")
    return result


@batch_runs_router.post("", response_model=BatchRunMutationResult)
async def record_batch_start(body: BatchRunStart):
    db = await connection.get_connection()
    return await batch_runs.record_batch_start(db, body)


@batch_runs_router.put("/{batch_run_id}/result", response_model=BatchRunMutationResult)
async def record_batch_result(batch_run_id: int, body: BatchRunResultUpdate):
    db = await connection.get_connection()
    result = await batch_runs.record_batch_result(db, batch_run_id, body)
    return _raise_if_missing(batch_run_id, result)


@batch_runs_router.get("", response_model=list[BatchRunRecord])
async def list_recent_batch_runs(limit: int | None = Query(None)):
    """Newest batches by start time (1-100, default 20)."""
    db = await connection.get_connection()
    return await batch_runs.list_recent_batch_runs(db, limit)


@batch_runs_router.delete("/{batch_run_id}", response_model=BatchRunMutationResult)
async def delete_batch_run(batch_run_id: int):
    db = await connection.get_connection()
    result = await batch_runs.delete_batch_run(db, batch_run_id)
    return _raise_if_missing(batch_run_id, result)
