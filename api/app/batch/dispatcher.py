import asyncio
import logging
import sqlite3
from dataclasses import replace
from typing import Any, Dict, List, Set

from ..config import get_settings
from ..db import (
    clear_queue,
    count_labeled_since,
    existing_label_ids,
    get_run_status,
    list_candidates,
    push_items,
    queue_length,
    requeue_failures,
    reset_run_children,
    set_run_status,
    transition_run_state,
)
from ..db.helpers import _chunked, _now_iso
from ..errors import Conflict, InvalidTransition, NotFound
from ..models import RunState, RunStatus, WorkItem
from ..state import (
    BATCH_CONCURRENCY_MAX,
    CANDIDATE_PAGE_SIZE,
    DEDUP_LOOKUP_BATCH_SIZE,
    ENQUEUE_BATCH_SIZE,
    STATUS_RECONCILE,
)
from .gateway import ClassifierGateway
from .worker_pool import PoolConfig, WorkerPool

logger = logging.getLogger("issuelens.batch")

ACTIONS = ("start", "status", "cancel", "pause", "resume", "retry")


def _handle_pool_exception(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Worker pool %s failed: %s", task.get_name(), exc, exc_info=exc)


def pool_config_from_settings() -> PoolConfig:
    current = get_settings()
    return PoolConfig(
        concurrency=min(current.batch_concurrency, BATCH_CONCURRENCY_MAX),
        max_retries=current.batch_max_retries,
        retry_delay=current.batch_retry_delay_ms / 1000,
        request_delay=current.batch_request_delay_ms / 1000,
    )


class BatchDispatcher:
    """Builds batch runs and drives their worker pools.

    One pool task per run key lives in this process. Run state itself is kept
    in the database, so status survives restarts and any process can read it.
    """

    def __init__(
        self,
        gateway: ClassifierGateway,
        config: PoolConfig | None = None,
        dedup_before_enqueue: bool | None = None,
        reconcile: bool = STATUS_RECONCILE,
    ) -> None:
        self._gateway = gateway
        self._config = config
        self._dedup = dedup_before_enqueue
        self._reconcile_counters = reconcile
        self._pools: Dict[str, WorkerPool] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._next_worker_id = 0
        self._retiring: Dict[str, Set[asyncio.Task]] = {}

    def _pool_config(self, concurrency: int | None = None) -> PoolConfig:
        config = self._config or pool_config_from_settings()
        if concurrency:
            config = replace(config, concurrency=concurrency)
        return config

    def _dedup_enabled(self) -> bool:
        if self._dedup is not None:
            return self._dedup
        return get_settings().batch_dedup_before_enqueue

    def is_active(self, run_key: str) -> bool:
        task = self._tasks.get(run_key)
        return task is not None and not task.done()

    async def execute(self, action: str, run_key: str) -> Dict[str, Any]:
        action = (action or "").strip().lower()
        if action not in ACTIONS:
            raise ValueError(f"Unknown action: {action or '<empty>'}")
        handler = getattr(self, action)
        return await handler(run_key)

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    async def _collect_candidates(self, run_key: str) -> List[WorkItem]:
        candidates: List[WorkItem] = []
        page_token: int | None = None
        while True:
            page, page_token = await list_candidates(run_key, page_token, CANDIDATE_PAGE_SIZE)
            candidates.extend(page)
            if page_token is None:
                break
        return candidates

    async def _drop_already_labeled(self, candidates: List[WorkItem]) -> List[WorkItem]:
        labeled: set = set()
        batches = list(_chunked([item.id for item in candidates], DEDUP_LOOKUP_BATCH_SIZE))
        for index, batch in enumerate(batches, start=1):
            found = await existing_label_ids(batch)
            labeled.update(found)
            logger.debug("Dedup batch %s/%s: %s already labeled", index, len(batches), len(found))
        return [item for item in candidates if item.id not in labeled]

    async def start(self, run_key: str) -> Dict[str, Any]:
        current = await get_run_status(run_key, errors_limit=0)
        if current is not None and current.state == RunState.RUNNING:
            raise Conflict(f"Batch analysis already running for {run_key}")
        await self._retire_pool(run_key)

        candidates = await self._collect_candidates(run_key)
        original_total = len(candidates)
        if self._dedup_enabled() and candidates:
            candidates = await self._drop_already_labeled(candidates)
        already_analyzed = original_total - len(candidates)
        config = self._pool_config()

        await clear_queue(run_key)
        await reset_run_children(run_key)

        if not candidates:
            logger.info(
                "Nothing to analyze for %s (%s issues, %s already analyzed)",
                run_key,
                original_total,
                already_analyzed,
            )
            message = (
                "No issues found for this repository"
                if original_total == 0
                else "All issues have already been analyzed for this repository"
            )
            return {
                "message": message,
                "totalCount": 0,
                "queueLength": 0,
                "originalTotalCount": original_total,
                "alreadyAnalyzedCount": already_analyzed,
                "concurrency": config.concurrency,
            }

        queued = await push_items(run_key, candidates, ENQUEUE_BATCH_SIZE)
        await set_run_status(
            RunStatus(
                run_key=run_key,
                state=RunState.RUNNING,
                start_time=_now_iso(),
                total_count=len(candidates),
                original_total_count=original_total,
                already_analyzed_count=already_analyzed,
                concurrency=config.concurrency,
            )
        )
        self._launch_pool(run_key, config)
        logger.info(
            "Started batch analysis for %s: %s queued, %s already analyzed",
            run_key,
            queued,
            already_analyzed,
        )
        return {
            "message": "Batch analysis started successfully",
            "totalCount": len(candidates),
            "queueLength": queued,
            "originalTotalCount": original_total,
            "alreadyAnalyzedCount": already_analyzed,
            "concurrency": config.concurrency,
        }

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    async def _reconcile(self, status: RunStatus, remaining: int) -> None:
        try:
            success = await count_labeled_since(status.run_key, status.start_time)
        except sqlite3.Error as exc:
            logger.warning("Status reconcile for %s fell back to stored counters: %s", status.run_key, exc)
            return
        total = status.total_count
        processed = max(0, total - remaining - len(status.current_items))
        success = min(success, processed)
        status.processed_count = processed
        status.success_count = success
        status.error_count = max(0, processed - success)

    async def status(self, run_key: str) -> Dict[str, Any]:
        current = await get_run_status(run_key)
        if current is None:
            return {"runKey": run_key, "status": RunState.NOT_STARTED.value}
        remaining = await queue_length(run_key)
        if self._reconcile_counters and current.state != RunState.CANCELLED:
            await self._reconcile(current, remaining)
        current.processed_count = min(current.processed_count, current.total_count)
        current.success_count = min(current.success_count, current.processed_count)
        response = current.to_response()
        response["remainingCount"] = remaining
        response["active"] = self.is_active(run_key)
        return response

    # ------------------------------------------------------------------
    # control commands
    # ------------------------------------------------------------------

    async def _require_status(self, run_key: str) -> RunStatus:
        current = await get_run_status(run_key, errors_limit=0)
        if current is None:
            raise NotFound(f"No batch analysis found for {run_key}")
        return current

    async def cancel(self, run_key: str) -> Dict[str, Any]:
        current = await self._require_status(run_key)
        moved = await transition_run_state(
            run_key,
            [RunState.RUNNING, RunState.PAUSED],
            RunState.CANCELLED,
            end_time=_now_iso(),
        )
        if not moved:
            raise InvalidTransition("cancel", current.state.value)
        self._stop_pool(run_key)
        cleared = await clear_queue(run_key)
        logger.info("Cancelled batch analysis for %s (%s queued items dropped)", run_key, cleared)
        return {
            "message": "Batch analysis cancelled successfully",
            "status": RunState.CANCELLED.value,
            "processedCount": current.processed_count,
            "totalCount": current.total_count,
            "remainingCount": 0,
        }

    async def pause(self, run_key: str) -> Dict[str, Any]:
        current = await self._require_status(run_key)
        moved = await transition_run_state(
            run_key,
            [RunState.RUNNING],
            RunState.PAUSED,
            paused_at=_now_iso(),
        )
        if not moved:
            raise InvalidTransition("pause", current.state.value)
        remaining = await queue_length(run_key)
        logger.info("Paused batch analysis for %s (%s items remaining)", run_key, remaining)
        return {
            "message": "Batch analysis paused successfully",
            "status": RunState.PAUSED.value,
            "processedCount": current.processed_count,
            "totalCount": current.total_count,
            "remainingCount": remaining,
        }

    async def resume(self, run_key: str) -> Dict[str, Any]:
        current = await self._require_status(run_key)
        if current.state != RunState.PAUSED:
            raise InvalidTransition("resume", current.state.value)
        remaining = await queue_length(run_key)
        if remaining == 0:
            moved = await transition_run_state(
                run_key,
                [RunState.PAUSED],
                RunState.COMPLETED,
                end_time=_now_iso(),
            )
            if not moved:
                raise InvalidTransition("resume", current.state.value)
            return {
                "message": "No remaining items to process. Analysis marked as completed.",
                "status": RunState.COMPLETED.value,
                "processedCount": current.processed_count,
                "totalCount": current.total_count,
                "remainingCount": 0,
            }
        moved = await transition_run_state(
            run_key,
            [RunState.PAUSED],
            RunState.RUNNING,
            resumed_at=_now_iso(),
        )
        if not moved:
            raise InvalidTransition("resume", current.state.value)
        self._launch_pool(run_key, self._pool_config(current.concurrency))
        logger.info("Resumed batch analysis for %s (%s items remaining)", run_key, remaining)
        return {
            "message": "Batch analysis resumed successfully",
            "status": RunState.RUNNING.value,
            "processedCount": current.processed_count,
            "totalCount": current.total_count,
            "remainingCount": remaining,
        }

    async def retry(self, run_key: str) -> Dict[str, Any]:
        current = await self._require_status(run_key)
        if current.state not in (RunState.RUNNING, RunState.PAUSED, RunState.COMPLETED):
            raise InvalidTransition("retry", current.state.value)
        retried = await requeue_failures(run_key)
        if retried == 0:
            return {
                "message": "No failed items to retry",
                "status": current.state.value,
                "retried": 0,
                "processedCount": current.processed_count,
                "totalCount": current.total_count,
                "remainingCount": await queue_length(run_key),
            }
        state = RunState.RUNNING
        if current.state != RunState.RUNNING:
            moved = await transition_run_state(
                run_key,
                [RunState.PAUSED, RunState.COMPLETED],
                RunState.RUNNING,
                resumed_at=_now_iso(),
            )
            if moved:
                self._launch_pool(run_key, self._pool_config(current.concurrency))
            else:
                state = current.state
        elif not self.is_active(run_key):
            self._launch_pool(run_key, self._pool_config(current.concurrency))
        logger.info("Re-queued %s failed items for %s", retried, run_key)
        refreshed = await get_run_status(run_key, errors_limit=0)
        return {
            "message": f"Re-queued {retried} failed items",
            "status": refreshed.state.value if refreshed else state.value,
            "retried": retried,
            "processedCount": refreshed.processed_count if refreshed else current.processed_count,
            "totalCount": current.total_count,
            "remainingCount": await queue_length(run_key),
        }

    # ------------------------------------------------------------------
    # pool lifecycle
    # ------------------------------------------------------------------

    def _launch_pool(self, run_key: str, config: PoolConfig) -> asyncio.Task:
        self._stop_pool(run_key)
        previous = self._tasks.get(run_key)
        if previous is not None and not previous.done():
            retiring = self._retiring.setdefault(run_key, set())
            retiring.add(previous)
            previous.add_done_callback(retiring.discard)
        # In-flight rows are keyed by worker id; a stopping pool may still hold one.
        pool = WorkerPool(run_key, self._gateway, config, first_worker_id=self._next_worker_id)
        self._next_worker_id += pool.concurrency
        task = asyncio.create_task(pool.run(), name=f"batch-pool:{run_key}")
        task.add_done_callback(_handle_pool_exception)
        task.add_done_callback(lambda done, key=run_key: self._forget(key, done))
        self._pools[run_key] = pool
        self._tasks[run_key] = task
        return task

    def _stop_pool(self, run_key: str) -> None:
        pool = self._pools.get(run_key)
        if pool is not None and self.is_active(run_key):
            pool.stop()

    async def _retire_pool(self, run_key: str) -> None:
        """Stop the run's pool and wait until its workers have settled their items."""
        self._stop_pool(run_key)
        await self.wait_idle(run_key)

    def _forget(self, run_key: str, task: asyncio.Task) -> None:
        if self._tasks.get(run_key) is task:
            self._tasks.pop(run_key, None)
            self._pools.pop(run_key, None)

    async def wait_idle(self, run_key: str) -> None:
        tasks = list(self._retiring.get(run_key, ()))
        task = self._tasks.get(run_key)
        if task is not None:
            tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for retiring in self._retiring.values():
            tasks.extend(task for task in retiring if not task.done())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._pools.clear()
        self._retiring.clear()
