"""Durable FIFO of pending work items, one logical queue per run key."""

import logging
from typing import Sequence

from pydantic import ValidationError

from ..errors import ParseFailure
from ..models import WorkItem
from .helpers import _chunked, _now_iso, _retry_on_lock
from .pool import get_connection, transaction

logger = logging.getLogger("issuelens.db")


def encode_item(item: WorkItem) -> str:
    return item.model_dump_json()


def decode_item(payload: str) -> WorkItem:
    try:
        return WorkItem.model_validate_json(payload)
    except ValidationError as exc:
        raise ParseFailure(f"Malformed queue entry: {payload[:200]!r}") from exc


@_retry_on_lock()
async def _push_batch(run_key: str, batch: Sequence[WorkItem]) -> int:
    timestamp = _now_iso()
    rows = [(run_key, item.id, encode_item(item), timestamp) for item in batch]
    async with transaction() as conn:
        cursor = await conn.executemany(
            """
            INSERT OR IGNORE INTO batch_queue (run_key, item_id, payload, enqueued_at)
            VALUES (?, ?, ?, ?)
            """,
            rows,
        )
        return max(0, int(cursor.rowcount or 0))


async def push_items(run_key: str, items: Sequence[WorkItem], batch_size: int = 500) -> int:
    """Append items in bounded batches; ids already queued for the run are skipped."""
    if not items:
        return 0
    pushed = 0
    batches = list(_chunked(items, batch_size))
    for index, batch in enumerate(batches, start=1):
        added = await _push_batch(run_key, batch)
        pushed += added
        logger.debug(
            "Queued batch %s/%s for %s (%s items, %s new)",
            index,
            len(batches),
            run_key,
            len(batch),
            added,
        )
    return pushed


@_retry_on_lock()
async def pop_item(run_key: str) -> WorkItem | None:
    """Remove and return the head of the queue, or None when it is empty.

    Select and delete happen under one write lock, so an entry is handed to
    exactly one caller. A payload that cannot be decoded is still removed and
    reported as ParseFailure.
    """
    async with transaction() as conn:
        cursor = await conn.execute(
            "SELECT seq, payload FROM batch_queue WHERE run_key = ? ORDER BY seq LIMIT 1",
            (run_key,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        await conn.execute("DELETE FROM batch_queue WHERE seq = ?", (row["seq"],))
    return decode_item(row["payload"])


async def queue_length(run_key: str) -> int:
    async with get_connection() as conn:
        row = await (await conn.execute(
            "SELECT COUNT(*) FROM batch_queue WHERE run_key = ?",
            (run_key,),
        )).fetchone()
    return int(row[0] if row else 0)


@_retry_on_lock()
async def clear_queue(run_key: str) -> int:
    async with get_connection() as conn:
        cursor = await conn.execute("DELETE FROM batch_queue WHERE run_key = ?", (run_key,))
        return int(cursor.rowcount or 0)

