"""Database connection factory.

Provides singleton async connection to SQLite (default) with WAL mode,
or an asyncpg pool for Postgres. Backend selection via AGENTLENS_DB_BACKEND.
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Union

import aiosqlite
try:
    import asyncpg
except ImportError:
    asyncpg = None  # type: ignore

from agentlens import config

logger = logging.getLogger("agentlens.db")

DB_PATH = Path(config.DB_PATH)

# Type alias for DB connection/pool
DbConnection = Union[aiosqlite.Connection, Any]  # Any to support asyncpg.Pool

_connection: DbConnection | None = None

# One writer at a time per shared SQLite connection.
_sqlite_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()


async def get_connection() -> DbConnection:
    """Return the singleton database connection/pool, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    if config.DB_BACKEND == "postgres":
        if not asyncpg:
            raise ImportError("asyncpg is required for Postgres backend.")

        logger.info(f"Connecting to PostgreSQL: {config.DATABASE_URL}")
        _connection = await asyncpg.create_pool(config.DATABASE_URL)
        return _connection
    else:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(DB_PATH))
        conn.row_factory = aiosqlite.Row
        # Enable WAL mode for better concurrent read performance
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA busy_timeout=5000")
        logger.info(f"Database connection established: {DB_PATH}")
        _connection = conn
        return _connection


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()  # asyncpg Pool has close() too
        _connection = None
        logger.info("Database connection closed")


def _sqlite_lock(db: aiosqlite.Connection) -> asyncio.Lock:
    lock = _sqlite_write_locks.get(db)
    if lock is None:
        lock = asyncio.Lock()
        _sqlite_write_locks[db] = lock
    return lock


@asynccontextmanager
async def transaction(db: DbConnection) -> AsyncIterator[DbConnection]:
    """Run a read-modify-write unit atomically.

    SQLite: serialized on the shared connection, committed on success and
    rolled back on any exception. Postgres: a pooled connection inside
    ``conn.transaction()``. Exceptions always propagate to the caller.
    """
    if isinstance(db, aiosqlite.Connection):
        async with _sqlite_lock(db):
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()
        return

    async with db.acquire() as conn:
        async with conn.transaction():
            yield conn


@asynccontextmanager
async def read_snapshot(db: DbConnection) -> AsyncIterator[DbConnection]:
    """Read committed aggregate state only.

    SQLite: waits out any in-flight ``transaction()`` on the shared connection,
    so half-applied or rolled-back writes are never visible. Postgres: a
    read-only repeatable-read transaction, so every query in the block sees
    the same snapshot.
    """
    if isinstance(db, aiosqlite.Connection):
        async with _sqlite_lock(db):
            yield db
        return

    async with db.acquire() as conn:
        async with conn.transaction(isolation="repeatable_read", readonly=True):
            yield conn
