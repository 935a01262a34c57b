#!/usr/bin/env python3
"""Backfill derived end-to-end timing for sessions written before it was tracked.

Usage:
  python agentlens/scripts/rebuild_timing.py
  python agentlens/scripts/rebuild_timing.py --limit 5000
  python agentlens/scripts/rebuild_timing.py --dry-run
"""
from __future__ import annotations

import argparse
import asyncio
from typing import Any

from agentlens.db import connection, migrations
from agentlens.db.connection import read_snapshot, transaction
from agentlens.db.factory import get_event_repository, get_session_repository
from agentlens.timing import derive_end_to_end_timing


def _timing_patch(session: dict) -> tuple[dict, bool]:
    timing = derive_end_to_end_timing(session).as_fields()
    patch = {
        key: value
        for key, value in timing.items()
        if value is not None and value != session.get(key)
    }
    return patch, any(value is None for value in timing.values())


async def rebuild_timing(db: Any, *, limit: int = 1000, dry_run: bool = False) -> dict[str, int]:
    """Derive and store end-to-end timing for sessions missing any derived field.

    Sessions whose signals still cannot produce a complete timing are left as
    they are and counted as ``incomplete``.
    """
    stats = {"scanned": 0, "updated": 0, "incomplete": 0}
    async with read_snapshot(db) as conn:
        candidates = await get_session_repository(conn).list_missing_timing(limit)

    for candidate in candidates:
        stats["scanned"] += 1
        patch, incomplete = _timing_patch(candidate)
        if incomplete:
            stats["incomplete"] += 1
        if not patch:
            continue
        stats["updated"] += 1
        if dry_run:
            continue
        async with transaction(db) as conn:
            await get_event_repository(conn).lock_session(candidate["session_id"])
            repo = get_session_repository(conn)
            # Re-derive from the row as it stands under the lock.
            current = await repo.get(candidate["id"])
            if current:
                await repo.patch(current["id"], _timing_patch(current)[0])

    return stats


async def _run(limit: int, dry_run: bool) -> int:
    db = await connection.get_connection()
    await migrations.run_migrations(db)
    stats = await rebuild_timing(db, limit=limit, dry_run=dry_run)
    print(
        f"sessions_scanned={stats['scanned']} "
        f"sessions_updated={stats['updated']} "
        f"still_incomplete={stats['incomplete']}"
        + (" (dry run)" if dry_run else "")
    )
    await connection.close_connection()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--limit", type=int, default=1000, help="Maximum sessions to inspect")
    parser.add_argument("--dry-run", action="store_true", help="Report changes without writing them")
    args = parser.parse_args()
    return asyncio.run(_run(max(1, args.limit), args.dry_run))


if __name__ == "__main__":
    raise SystemExit(main())
