"""Tests for the persisted run status store."""

import asyncio

from api.app.db import (
    complete_if_drained,
    get_run_state,
    get_run_status,
    pop_item,
    purge_expired_runs,
    push_items,
    queue_length,
    record_failure,
    record_item_outcome,
    recover_interrupted_runs,
    requeue_failures,
    set_in_flight,
    set_run_status,
    transition_run_state,
)
from api.app.models import RunState, RunStatus

from .support import RUN_KEY, make_item


def _running(total: int = 3) -> RunStatus:
    return RunStatus(
        run_key=RUN_KEY,
        state=RunState.RUNNING,
        start_time="2026-01-01T00:00:00.000000+00:00",
        total_count=total,
        concurrency=2,
    )


class TestStatusRecord:
    """Tests for reading and writing status records."""

    def test_missing_status_is_none(self):
        """A run key without a record reads as None."""
        assert asyncio.run(get_run_status(RUN_KEY)) is None

    def test_round_trip_scalar_fields(self):
        """Scalar fields survive a write and read."""

        async def scenario():
            await set_run_status(_running(total=7))
            return await get_run_status(RUN_KEY)

        status = asyncio.run(scenario())
        assert status.state == RunState.RUNNING
        assert status.total_count == 7
        assert status.concurrency == 2
        assert status.current_items == {}
        assert status.errors == []

    def test_expired_status_reads_as_absent_and_is_purged(self):
        """A record past its retention window is invisible and purged."""

        async def scenario():
            await set_run_status(_running(), ttl_seconds=-5)
            await push_items(RUN_KEY, [make_item(1)])
            visible = await get_run_status(RUN_KEY)
            purged = await purge_expired_runs()
            return visible, purged, await queue_length(RUN_KEY)

        visible, purged, remaining = asyncio.run(scenario())
        assert visible is None
        assert purged == 1
        assert remaining == 0


class TestCounters:
    """Tests for atomic counter updates."""

    def test_outcomes_increment_counters(self):
        """Each settled item bumps processed and exactly one of success/error."""

        async def scenario():
            await set_run_status(_running())
            await asyncio.gather(
                record_item_outcome(RUN_KEY, success=True),
                record_item_outcome(RUN_KEY, success=True),
                record_item_outcome(RUN_KEY, success=False),
            )
            return await get_run_status(RUN_KEY)

        status = asyncio.run(scenario())
        assert status.processed_count == 3
        assert status.success_count == 2
        assert status.error_count == 1

    def test_failures_are_listed_newest_last_and_capped(self):
        """status shows at most errors_limit entries, the newest ones."""

        async def scenario():
            await set_run_status(_running(total=5))
            for item_id in range(1, 6):
                await record_failure(RUN_KEY, make_item(item_id), f"boom {item_id}", 3)
            return await get_run_status(RUN_KEY, errors_limit=2)

        status = asyncio.run(scenario())
        assert [entry.item_id for entry in status.errors] == [4, 5]
        assert status.errors[-1].message == "boom 5"
        assert status.errors[-1].attempts == 3


class TestTransitions:
    """Tests for conditional state changes."""

    def test_transition_from_allowed_state(self):
        """The update applies when the current state is allowed."""

        async def scenario():
            await set_run_status(_running())
            moved = await transition_run_state(
                RUN_KEY, [RunState.RUNNING], RunState.PAUSED, paused_at="2026-01-01T01:00:00.000000+00:00"
            )
            return moved, await get_run_status(RUN_KEY)

        moved, status = asyncio.run(scenario())
        assert moved is True
        assert status.state == RunState.PAUSED
        assert status.paused_at == "2026-01-01T01:00:00.000000+00:00"

    def test_transition_from_other_state_is_refused(self):
        """The update is skipped when the current state is not allowed."""

        async def scenario():
            await set_run_status(_running())
            moved = await transition_run_state(RUN_KEY, [RunState.PAUSED], RunState.RUNNING)
            return moved, await get_run_state(RUN_KEY)

        assert asyncio.run(scenario()) == (False, RunState.RUNNING)

    def test_complete_if_drained_requires_empty_queue(self):
        """A run completes only once its queue is empty."""

        async def scenario():
            await set_run_status(_running())
            await push_items(RUN_KEY, [make_item(1)])
            early = await complete_if_drained(RUN_KEY)
            await pop_item(RUN_KEY)
            late = await complete_if_drained(RUN_KEY)
            again = await complete_if_drained(RUN_KEY)
            return early, late, again, await get_run_status(RUN_KEY)

        early, late, again, status = asyncio.run(scenario())
        assert (early, late, again) == (False, True, False)
        assert status.state == RunState.COMPLETED
        assert status.end_time is not None

    def test_complete_if_drained_ignores_paused_runs(self):
        """Only running runs are completed."""

        async def scenario():
            await set_run_status(_running())
            await transition_run_state(RUN_KEY, [RunState.RUNNING], RunState.PAUSED)
            return await complete_if_drained(RUN_KEY), await get_run_state(RUN_KEY)

        assert asyncio.run(scenario()) == (False, RunState.PAUSED)


class TestRequeueAndRecovery:
    """Tests for moving items back into the queue."""

    def test_requeue_failures_uncounts_them(self):
        """Failed items return to the queue and leave the counters."""

        async def scenario():
            await set_run_status(_running(total=3))
            await record_item_outcome(RUN_KEY, success=True)
            for item_id in (2, 3):
                await record_failure(RUN_KEY, make_item(item_id), "boom", 3)
                await record_item_outcome(RUN_KEY, success=False)
            moved = await requeue_failures(RUN_KEY)
            return moved, await get_run_status(RUN_KEY), await queue_length(RUN_KEY)

        moved, status, remaining = asyncio.run(scenario())
        assert moved == 2
        assert remaining == 2
        assert status.processed_count == 1
        assert status.error_count == 0
        assert status.errors == []

    def test_requeue_without_failures_is_noop(self):
        """Nothing happens when no item failed."""

        async def scenario():
            await set_run_status(_running())
            return await requeue_failures(RUN_KEY)

        assert asyncio.run(scenario()) == 0

    def test_recover_interrupted_runs(self):
        """Running runs are parked as paused and in-flight items re-queued."""

        async def scenario():
            await set_run_status(_running(total=2))
            await set_in_flight(RUN_KEY, 0, make_item(1))
            await push_items(RUN_KEY, [make_item(2)])
            recovered = await recover_interrupted_runs()
            status = await get_run_status(RUN_KEY)
            first = await pop_item(RUN_KEY)
            second = await pop_item(RUN_KEY)
            return recovered, status, [first.id, second.id]

        recovered, status, ids = asyncio.run(scenario())
        assert recovered == [RUN_KEY]
        assert status.state == RunState.PAUSED
        assert status.current_items == {}
        assert sorted(ids) == [1, 2]
