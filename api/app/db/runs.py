"""Persisted run status: one record per run key plus its in-flight and failure rows.

Workers never rewrite the whole record. Counters are incremented in SQL and
state changes are conditional on the current state, so concurrent workers and
control commands cannot overwrite each other's updates.
"""

import logging
from typing import Iterable, List

import aiosqlite

from ..errors import ParseFailure
from ..models import ErrorEntry, InFlightItem, RunState, RunStatus, WorkItem
from ..state import RUN_ACTIVE_TTL_SECONDS, RUN_TERMINAL_TTL_SECONDS, STATUS_ERRORS_LIMIT
from .helpers import _expires_at, _now_iso, _placeholders, _retry_on_lock
from .pool import get_connection, transaction
from .queue import encode_item

logger = logging.getLogger("issuelens.db")

_ACTIVE_STATES = (RunState.RUNNING.value, RunState.PAUSED.value)


def _row_to_status(
    row: aiosqlite.Row,
    in_flight_rows: Iterable[aiosqlite.Row],
    error_rows: Iterable[aiosqlite.Row],
) -> RunStatus:
    try:
        state = RunState(row["state"])
    except ValueError as exc:
        raise ParseFailure(f"Unknown run state {row['state']!r} for {row['run_key']}") from exc
    current_items = {
        str(item["worker_id"]): InFlightItem(
            id=item["item_id"],
            number=item["item_number"],
            title=item["title"] or "",
            worker_id=item["worker_id"],
            started_at=item["started_at"],
        )
        for item in in_flight_rows
    }
    errors = [
        ErrorEntry(
            item_id=err["item_id"],
            item_number=err["item_number"],
            message=err["message"],
            timestamp=err["failed_at"],
            attempts=err["attempts"],
        )
        for err in error_rows
    ]
    return RunStatus(
        run_key=row["run_key"],
        state=state,
        start_time=row["start_time"],
        end_time=row["end_time"],
        paused_at=row["paused_at"],
        resumed_at=row["resumed_at"],
        total_count=row["total_count"],
        processed_count=row["processed_count"],
        success_count=row["success_count"],
        error_count=row["error_count"],
        original_total_count=row["original_total_count"],
        already_analyzed_count=row["already_analyzed_count"],
        concurrency=row["concurrency"],
        current_items=current_items,
        errors=errors,
    )


async def get_run_status(run_key: str, errors_limit: int = STATUS_ERRORS_LIMIT) -> RunStatus | None:
    """Return the run's status, or None when absent or past its retention window."""
    async with get_connection() as conn:
        row = await (await conn.execute(
            "SELECT * FROM batch_runs WHERE run_key = ? AND expires_at > ?",
            (run_key, _now_iso()),
        )).fetchone()
        if row is None:
            return None
        in_flight_rows = await (await conn.execute(
            """
            SELECT worker_id, item_id, item_number, title, started_at
            FROM batch_in_flight
            WHERE run_key = ?
            ORDER BY worker_id
            """,
            (run_key,),
        )).fetchall()
        error_rows = await (await conn.execute(
            """
            SELECT item_id, item_number, message, attempts, failed_at
            FROM batch_failures
            WHERE run_key = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (run_key, errors_limit),
        )).fetchall()
    return _row_to_status(row, in_flight_rows, list(reversed(error_rows)))


async def get_run_state(run_key: str) -> RunState | None:
    async with get_connection() as conn:
        row = await (await conn.execute(
            "SELECT run_key, state FROM batch_runs WHERE run_key = ? AND expires_at > ?",
            (run_key, _now_iso()),
        )).fetchone()
    if row is None:
        return None
    try:
        return RunState(row["state"])
    except ValueError as exc:
        raise ParseFailure(f"Unknown run state {row['state']!r} for {row['run_key']}") from exc


@_retry_on_lock()
async def set_run_status(status: RunStatus, ttl_seconds: int | None = None) -> None:
    """Write the scalar fields of a status record, replacing any previous run."""
    if ttl_seconds is None:
        ttl_seconds = RUN_TERMINAL_TTL_SECONDS if status.state.is_terminal else RUN_ACTIVE_TTL_SECONDS
    timestamp = _now_iso()
    async with get_connection() as conn:
        await conn.execute(
            """
            INSERT INTO batch_runs (
                run_key, state, start_time, end_time, paused_at, resumed_at,
                total_count, processed_count, success_count, error_count,
                original_total_count, already_analyzed_count, concurrency,
                updated_at, expires_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_key) DO UPDATE SET
                state = excluded.state,
                start_time = excluded.start_time,
                end_time = excluded.end_time,
                paused_at = excluded.paused_at,
                resumed_at = excluded.resumed_at,
                total_count = excluded.total_count,
                processed_count = excluded.processed_count,
                success_count = excluded.success_count,
                error_count = excluded.error_count,
                original_total_count = excluded.original_total_count,
                already_analyzed_count = excluded.already_analyzed_count,
                concurrency = excluded.concurrency,
                updated_at = excluded.updated_at,
                expires_at = excluded.expires_at
            """,
            (
                status.run_key,
                status.state.value,
                status.start_time,
                status.end_time,
                status.paused_at,
                status.resumed_at,
                status.total_count,
                status.processed_count,
                status.success_count,
                status.error_count,
                status.original_total_count,
                status.already_analyzed_count,
                status.concurrency,
                timestamp,
                _expires_at(ttl_seconds),
            ),
        )


@_retry_on_lock()
async def reset_run_children(run_key: str) -> None:
    async with transaction() as conn:
        await conn.execute("DELETE FROM batch_in_flight WHERE run_key = ?", (run_key,))
        await conn.execute("DELETE FROM batch_failures WHERE run_key = ?", (run_key,))


@_retry_on_lock()
async def transition_run_state(
    run_key: str,
    from_states: Iterable[RunState],
    to_state: RunState,
    *,
    end_time: str | None = None,
    paused_at: str | None = None,
    resumed_at: str | None = None,
) -> bool:
    """Move a run to ``to_state`` only if it is currently in one of ``from_states``."""
    allowed = [state.value for state in from_states]
    if not allowed:
        return False
    ttl_seconds = RUN_TERMINAL_TTL_SECONDS if to_state.is_terminal else RUN_ACTIVE_TTL_SECONDS
    timestamp = _now_iso()
    async with get_connection() as conn:
        cursor = await conn.execute(
            f"""
            UPDATE batch_runs
            SET state = ?,
                end_time = COALESCE(?, end_time),
                paused_at = COALESCE(?, paused_at),
                resumed_at = COALESCE(?, resumed_at),
                updated_at = ?,
                expires_at = ?
            WHERE run_key = ? AND expires_at > ? AND state IN ({_placeholders(allowed)})
            """,
            (
                to_state.value,
                end_time,
                paused_at,
                resumed_at,
                timestamp,
                _expires_at(ttl_seconds),
                run_key,
                timestamp,
                *allowed,
            ),
        )
        return int(cursor.rowcount or 0) > 0


@_retry_on_lock()
async def complete_if_drained(run_key: str) -> bool:
    """Mark a running run completed if its queue is empty; True when this call did it."""
    timestamp = _now_iso()
    async with get_connection() as conn:
        cursor = await conn.execute(
            """
            UPDATE batch_runs
            SET state = ?, end_time = ?, updated_at = ?, expires_at = ?
            WHERE run_key = ?
              AND state = ?
              AND NOT EXISTS (SELECT 1 FROM batch_queue WHERE run_key = ?)
            """,
            (
                RunState.COMPLETED.value,
                timestamp,
                timestamp,
                _expires_at(RUN_TERMINAL_TTL_SECONDS),
                run_key,
                RunState.RUNNING.value,
                run_key,
            ),
        )
        return int(cursor.rowcount or 0) > 0


@_retry_on_lock()
async def record_item_outcome(run_key: str, success: bool) -> None:
    """Count one settled item; active runs get their retention window extended."""
    timestamp = _now_iso()
    async with get_connection() as conn:
        await conn.execute(
            f"""
            UPDATE batch_runs
            SET processed_count = processed_count + 1,
                success_count = success_count + ?,
                error_count = error_count + ?,
                updated_at = ?,
                expires_at = CASE
                    WHEN state IN ({_placeholders(_ACTIVE_STATES)}) THEN ?
                    ELSE expires_at
                END
            WHERE run_key = ?
            """,
            (
                1 if success else 0,
                0 if success else 1,
                timestamp,
                *_ACTIVE_STATES,
                _expires_at(RUN_ACTIVE_TTL_SECONDS),
                run_key,
            ),
        )


@_retry_on_lock()
async def set_in_flight(run_key: str, worker_id: int, item: WorkItem) -> None:
    async with get_connection() as conn:
        await conn.execute(
            """
            INSERT INTO batch_in_flight (run_key, worker_id, item_id, item_number, title, payload, started_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_key, worker_id) DO UPDATE SET
                item_id = excluded.item_id,
                item_number = excluded.item_number,
                title = excluded.title,
                payload = excluded.payload,
                started_at = excluded.started_at
            """,
            (run_key, worker_id, item.id, item.number, item.title, encode_item(item), _now_iso()),
        )


@_retry_on_lock()
async def clear_in_flight(run_key: str, worker_id: int) -> None:
    async with get_connection() as conn:
        await conn.execute(
            "DELETE FROM batch_in_flight WHERE run_key = ? AND worker_id = ?",
            (run_key, worker_id),
        )


@_retry_on_lock()
async def record_failure(run_key: str, item: WorkItem, message: str, attempts: int) -> None:
    async with get_connection() as conn:
        await conn.execute(
            """
            INSERT INTO batch_failures (run_key, item_id, item_number, message, attempts, payload, failed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_key, item_id) DO UPDATE SET
                message = excluded.message,
                attempts = excluded.attempts,
                payload = excluded.payload,
                failed_at = excluded.failed_at
            """,
            (run_key, item.id, item.number, message[:1000], attempts, encode_item(item), _now_iso()),
        )


@_retry_on_lock()
async def requeue_failures(run_key: str) -> int:
    """Move every failed item of the run back to its queue and uncount it.

    The failure records are dropped, so re-admitted items start again with
    zero attempts.
    """
    timestamp = _now_iso()
    async with transaction() as conn:
        row = await (await conn.execute(
            "SELECT COUNT(*) FROM batch_failures WHERE run_key = ?",
            (run_key,),
        )).fetchone()
        failed = int(row[0] if row else 0)
        if failed == 0:
            return 0
        await conn.execute(
            """
            INSERT OR IGNORE INTO batch_queue (run_key, item_id, payload, enqueued_at)
            SELECT run_key, item_id, payload, ?
            FROM batch_failures
            WHERE run_key = ?
            ORDER BY id
            """,
            (timestamp, run_key),
        )
        await conn.execute("DELETE FROM batch_failures WHERE run_key = ?", (run_key,))
        await conn.execute(
            """
            UPDATE batch_runs
            SET processed_count = MAX(0, processed_count - ?),
                error_count = MAX(0, error_count - ?),
                updated_at = ?
            WHERE run_key = ?
            """,
            (failed, failed, timestamp, run_key),
        )
    return failed


@_retry_on_lock()
async def purge_expired_runs() -> int:
    timestamp = _now_iso()
    async with transaction() as conn:
        rows = await (await conn.execute(
            "SELECT run_key FROM batch_runs WHERE expires_at <= ?",
            (timestamp,),
        )).fetchall()
        run_keys = [row["run_key"] for row in rows]
        if not run_keys:
            return 0
        marks = _placeholders(run_keys)
        for table in ("batch_queue", "batch_in_flight", "batch_failures", "batch_runs"):
            await conn.execute(f"DELETE FROM {table} WHERE run_key IN ({marks})", run_keys)
    logger.info("Purged %s expired batch runs", len(run_keys))
    return len(run_keys)


@_retry_on_lock()
async def recover_interrupted_runs() -> List[str]:
    """Park runs left ``running`` by a previous process as ``paused``.

    Items that were in flight when the process stopped go back to the queue,
    so a later resume processes them.
    """
    timestamp = _now_iso()
    async with transaction() as conn:
        rows = await (await conn.execute(
            "SELECT run_key FROM batch_runs WHERE state = ? AND expires_at > ?",
            (RunState.RUNNING.value, timestamp),
        )).fetchall()
        run_keys = [row["run_key"] for row in rows]
        await conn.execute(
            """
            INSERT OR IGNORE INTO batch_queue (run_key, item_id, payload, enqueued_at)
            SELECT run_key, item_id, payload, ?
            FROM batch_in_flight
            ORDER BY started_at
            """,
            (timestamp,),
        )
        await conn.execute("DELETE FROM batch_in_flight")
        if run_keys:
            await conn.execute(
                f"""
                UPDATE batch_runs
                SET state = ?, paused_at = ?, updated_at = ?
                WHERE run_key IN ({_placeholders(run_keys)})
                """,
                (RunState.PAUSED.value, timestamp, timestamp, *run_keys),
            )
    return run_keys
