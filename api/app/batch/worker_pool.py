import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, Set

from ..db import (
    clear_in_flight,
    complete_if_drained,
    get_run_state,
    pop_item,
    record_failure,
    record_item_outcome,
    set_in_flight,
)
from ..db.helpers import _now_iso
from ..errors import ParseFailure, PermanentItemFailure, TransientClassificationFailure
from ..models import RunState, WorkItem
from ..state import PROGRESS_LOG_EVERY
from .gateway import ClassifierGateway

logger = logging.getLogger("issuelens.batch")


@dataclass(frozen=True)
class PoolConfig:
    concurrency: int = 10
    max_retries: int = 3
    retry_delay: float = 0.5
    request_delay: float = 0.5


def _log_item_event(event: str, run_key: str, worker_id: int, item: WorkItem, **extra: object) -> None:
    payload: Dict[str, object] = {
        "event": event,
        "run_key": run_key,
        "worker_id": worker_id,
        "item_id": item.id,
        "item_number": item.number,
        "timestamp": _now_iso(),
    }
    payload.update(extra)
    logger.info("batch_item_event %s", json.dumps(payload, ensure_ascii=False))


class WorkerPool:
    """Competing workers draining one run's queue.

    Workers poll the run state before every pop, so pause and cancel take
    effect after the item in hand. The last worker to find the queue empty
    marks the run completed.
    """

    def __init__(
        self,
        run_key: str,
        gateway: ClassifierGateway,
        config: PoolConfig,
        first_worker_id: int = 0,
    ) -> None:
        self.run_key = run_key
        self._first_worker_id = first_worker_id
        self._gateway = gateway
        self._config = config
        self._busy: Set[int] = set()
        self._stopping = False
        self._processed = 0

    @property
    def concurrency(self) -> int:
        return max(1, self._config.concurrency)

    @property
    def worker_ids(self) -> range:
        return range(self._first_worker_id, self._first_worker_id + self.concurrency)

    def stop(self) -> None:
        """Let workers finish the item in hand, then exit without completing the run."""
        self._stopping = True

    async def run(self) -> None:
        self._busy = set(self.worker_ids)
        logger.info("Starting %s workers for %s", self.concurrency, self.run_key)
        workers = [
            asyncio.create_task(self._worker(worker_id), name=f"batch:{self.run_key}:{worker_id}")
            for worker_id in self.worker_ids
        ]
        results = await asyncio.gather(*workers, return_exceptions=True)
        for worker_id, result in zip(self.worker_ids, results):
            if isinstance(result, Exception):
                logger.error(
                    "Worker %s of %s crashed: %s",
                    worker_id,
                    self.run_key,
                    result,
                    exc_info=result,
                )
        logger.info("All workers for %s finished (%s items this pool)", self.run_key, self._processed)

    async def _worker(self, worker_id: int) -> None:
        try:
            await self._work(worker_id)
        except sqlite3.Error as exc:
            logger.error("Worker %s of %s stopped, store unavailable: %s", worker_id, self.run_key, exc)
        finally:
            self._busy.discard(worker_id)

    async def _work(self, worker_id: int) -> None:
        while not self._stopping:
            state = await get_run_state(self.run_key)
            if state != RunState.RUNNING:
                logger.info("Worker %s of %s exits, run is %s", worker_id, self.run_key, state)
                return
            try:
                item = await pop_item(self.run_key)
            except ParseFailure as exc:
                logger.warning("Skipping queue entry of %s: %s", self.run_key, exc)
                continue
            if item is None:
                if await self._drained(worker_id):
                    return
                continue
            await self._process(worker_id, item)
            if self._config.request_delay > 0:
                await asyncio.sleep(self._config.request_delay)

    async def _drained(self, worker_id: int) -> bool:
        """Handle an empty pop; False means the queue was refilled and work goes on."""
        self._busy.discard(worker_id)
        if self._busy or self._stopping:
            return True
        if await complete_if_drained(self.run_key):
            logger.info("Batch run %s completed", self.run_key)
            return True
        if await get_run_state(self.run_key) != RunState.RUNNING:
            return True
        self._busy.add(worker_id)
        return False

    async def _process(self, worker_id: int, item: WorkItem) -> None:
        await set_in_flight(self.run_key, worker_id, item)
        _log_item_event("started", self.run_key, worker_id, item)
        try:
            attempts = await self._classify_with_retries(worker_id, item)
        except PermanentItemFailure as exc:
            await record_failure(self.run_key, item, exc.message, exc.attempts)
            await record_item_outcome(self.run_key, success=False)
            _log_item_event(
                "failed",
                self.run_key,
                worker_id,
                item,
                attempts=exc.attempts,
                error=exc.message,
            )
        else:
            await record_item_outcome(self.run_key, success=True)
            _log_item_event("succeeded", self.run_key, worker_id, item, attempts=attempts)
        await clear_in_flight(self.run_key, worker_id)

        self._processed += 1
        if self._processed % PROGRESS_LOG_EVERY == 0:
            logger.info("Batch progress for %s: %s items processed by this pool", self.run_key, self._processed)

    async def _classify_with_retries(self, worker_id: int, item: WorkItem) -> int:
        max_retries = max(1, self._config.max_retries)
        message = ""
        for attempt in range(1, max_retries + 1):
            try:
                labels = await self._gateway.classify(item)
                await self._gateway.persist(item, labels)
                return attempt
            except TransientClassificationFailure as exc:
                message = str(exc)
                if attempt >= max_retries:
                    break
                wait = self._config.retry_delay * attempt
                logger.warning(
                    "Item #%s of %s failed on attempt %s/%s: %s. Retrying in %ss",
                    item.number,
                    self.run_key,
                    attempt,
                    max_retries,
                    exc,
                    wait,
                )
                _log_item_event("retry", self.run_key, worker_id, item, attempt=attempt, error=message)
                await asyncio.sleep(wait)
        raise PermanentItemFailure(item.id, max_retries, message)
