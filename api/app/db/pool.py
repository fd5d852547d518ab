import asyncio
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiosqlite

from ..config import get_settings
from ..state import _env_int
from .helpers import _ensure_parent_dir, _sqlite_path

logger = logging.getLogger("issuelens.db")

_pool: "SQLitePool | None" = None

SQLITE_JOURNAL_MODE = os.getenv("SQLITE_JOURNAL_MODE", "WAL").upper()
SQLITE_SYNCHRONOUS = os.getenv("SQLITE_SYNCHRONOUS", "NORMAL").upper()
SQLITE_BUSY_TIMEOUT = _env_int("SQLITE_BUSY_TIMEOUT", 5000, minimum=1)


def _pragmas() -> list[str]:
    return [
        f"synchronous={SQLITE_SYNCHRONOUS}",
        "temp_store=MEMORY",
        f"busy_timeout={SQLITE_BUSY_TIMEOUT}",
    ]


async def _open_connection(db_path: str) -> aiosqlite.Connection:
    # isolation_level=None: statements autocommit unless wrapped in transaction().
    conn = await aiosqlite.connect(db_path, timeout=30, isolation_level=None)
    conn.row_factory = aiosqlite.Row
    try:
        async with conn.execute(f"PRAGMA journal_mode={SQLITE_JOURNAL_MODE}") as cursor:
            row = await cursor.fetchone()
        mode = str(row[0]).upper() if row else "UNKNOWN"
        if mode != SQLITE_JOURNAL_MODE:
            logger.warning("SQLite journal_mode %s requested, running with %s", SQLITE_JOURNAL_MODE, mode)
        for pragma in _pragmas():
            await conn.execute(f"PRAGMA {pragma}")
    except sqlite3.Error as exc:
        logger.warning("Could not apply SQLite pragmas to %s: %s", db_path, exc)
    return conn


def _resolve_db_path() -> str:
    db_path = _sqlite_path(get_settings().database_url)
    _ensure_parent_dir(db_path)
    return db_path


class SQLitePool:
    """Fixed-size set of connections shared by request handlers and batch workers."""

    def __init__(self, db_path: str, size: int) -> None:
        self._db_path = db_path
        self._size = max(1, size)
        self._idle: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=self._size)

    @property
    def size(self) -> int:
        return self._size

    async def init(self) -> None:
        for _ in range(self._size):
            await self._idle.put(await _open_connection(self._db_path))

    async def close(self) -> None:
        while not self._idle.empty():
            conn = await self._idle.get()
            await conn.close()

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await self._idle.get()
        try:
            yield conn
        finally:
            await self._idle.put(conn)


async def init_db_pool(pool_size: int | None = None) -> None:
    global _pool
    if pool_size is None:
        pool_size = _env_int("DB_POOL_SIZE", 5, minimum=1)
    db_path = _resolve_db_path()
    pool = SQLitePool(db_path, pool_size)
    await pool.init()
    _pool = pool
    logger.info("SQLite pool ready: %s connections at %s", pool.size, db_path)


async def close_db_pool() -> None:
    global _pool
    if _pool:
        await _pool.close()
    _pool = None


@asynccontextmanager
async def get_connection() -> AsyncIterator[aiosqlite.Connection]:
    if _pool is None:
        conn = await _open_connection(_resolve_db_path())
        try:
            yield conn
        finally:
            await conn.close()
        return
    async with _pool.connection() as conn:
        yield conn


@asynccontextmanager
async def transaction() -> AsyncIterator[aiosqlite.Connection]:
    """Connection holding the write lock (BEGIN IMMEDIATE) until commit or rollback."""
    async with get_connection() as conn:
        await conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            await conn.execute("ROLLBACK")
            raise
        await conn.execute("COMMIT")
