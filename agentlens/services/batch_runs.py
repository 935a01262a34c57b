"""Ledger of scripted batch runs: prompts fanned out into many agent sessions.

A batch is recorded when the driver starts it and closed out with success and
failure counts once every run has finished. Listing is newest-first by start.
"""
from __future__ import annotations

import logging
import math
import time
from typing import Optional

from agentlens.db.connection import DbConnection, read_snapshot, transaction
from agentlens.db.factory import get_batch_run_repository
from agentlens.models import (
    BatchRunMutationResult,
    BatchRunRecord,
    BatchRunResultUpdate,
    BatchRunStart,
)

logger = logging.getLogger("agentlens.batches")

DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 100


def _now_ms() -> int:
    return int(time.time() * 1000)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def sanitize_prompts(prompts: list[str]) -> list[str]:
    return [p.strip() for p in prompts if p and p.strip()]


def sanitize_tags(tags: Optional[list[str]]) -> Optional[list[str]]:
    if not tags:
        return None
    cleaned = [t.strip() for t in tags if t and t.strip()]
    return cleaned or None


def derive_total_runs(prompts: list[str], runs_per_prompt: float, requested_runs: Optional[float]) -> int:
    """Planned run count: prompts x runs-per-prompt, raised to an explicit request."""
    planned = len(prompts) * max(1, _round_half_up(runs_per_prompt))
    if requested_runs is None or not math.isfinite(requested_runs):
        return planned
    return max(planned, max(0, _round_half_up(requested_runs)))


def _clamp_limit(limit: Optional[int]) -> int:
    return max(1, min(limit or DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT))


def _to_record(row: dict) -> BatchRunRecord:
    prompts = row.get("prompts") or []
    return BatchRunRecord(
        batchRunId=row["id"],
        name=row.get("name"),
        batchId=row["batch_id"],
        prompts=prompts,
        promptCount=row.get("prompt_count") if row.get("prompt_count") is not None else len(prompts),
        totalRuns=row.get("total_runs") or 0,
        runsPerPrompt=row.get("runs_per_prompt") or 1,
        delayMs=row.get("delay_ms") or 0,
        restoreBaseline=bool(row.get("restore_baseline")),
        tags=row.get("tags") or [],
        startedAt=row["started_at"],
        finishedAt=row.get("finished_at"),
        successCount=row.get("success_count") or 0,
        failureCount=row.get("failure_count") or 0,
        status=row.get("status") or ("finished" if row.get("finished_at") else "running"),
        createdAt=row.get("created_at"),
        updatedAt=row.get("updated_at"),
    )


async def record_batch_start(db: DbConnection, start: BatchRunStart) -> BatchRunMutationResult:
    prompts = sanitize_prompts(start.prompts)
    runs_per_prompt = max(1, _round_half_up(start.runsPerPrompt))
    name = (start.name or "").strip() or None
    now = _now_ms()
    batch = {
        "name": name,
        "batch_id": start.batchId,
        "prompts": prompts,
        "prompt_count": len(prompts),
        "total_runs": derive_total_runs(prompts, runs_per_prompt, start.requestedRuns),
        "runs_per_prompt": runs_per_prompt,
        "delay_ms": max(0, _round_half_up(start.delayMs)),
        "restore_baseline": start.restoreBaseline,
        "tags": sanitize_tags(start.tags),
        "started_at": start.startedAt if start.startedAt is not None else now,
        "finished_at": None,
        "success_count": 0,
        "failure_count": 0,
        "status": "running",
        "created_at": now,
        "updated_at": now,
    }
    async with transaction(db) as conn:
        row_id = await get_batch_run_repository(conn).insert(batch)
    logger.info(f"Batch {start.batchId} started as run {row_id} ({batch['total_runs']} runs)")
    return BatchRunMutationResult(ok=True, batchRunId=row_id)


async def record_batch_result(
    db: DbConnection, batch_run_id: int, result: BatchRunResultUpdate
) -> BatchRunMutationResult:
    async with transaction(db) as conn:
        repo = get_batch_run_repository(conn)
        existing = await repo.get(batch_run_id)
        if existing is None:
            return BatchRunMutationResult(ok=False, error="not_found")
        current = existing.get("status") or "running"
        now = _now_ms()
        await repo.patch(batch_run_id, {
            "finished_at": result.finishedAt if result.finishedAt is not None else now,
            "success_count": max(0, _round_half_up(result.successCount)),
            "failure_count": max(0, _round_half_up(result.failureCount)),
            "status": result.status or ("finished" if current == "running" else current),
            "updated_at": now,
        })
    return BatchRunMutationResult(ok=True, batchRunId=batch_run_id)


async def list_recent_batch_runs(db: DbConnection, limit: Optional[int] = None) -> list[BatchRunRecord]:
    async with read_snapshot(db) as conn:
        rows = await get_batch_run_repository(conn).list_recent(_clamp_limit(limit))
    return [_to_record(r) for r in rows]


async def delete_batch_run(db: DbConnection, batch_run_id: int) -> BatchRunMutationResult:
    async with transaction(db) as conn:
        deleted = await get_batch_run_repository(conn).delete(batch_run_id)
    if not deleted:
        return BatchRunMutationResult(ok=False, error="not_found")
    logger.info(f"Deleted batch run {batch_run_id}")
    return BatchRunMutationResult(ok=True, batchRunId=batch_run_id)
