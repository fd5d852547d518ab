"""Tests for the durable work queue."""

import asyncio

import pytest

from api.app.db import clear_queue, get_connection, pop_item, push_items, queue_length
from api.app.errors import ParseFailure

from .support import RUN_KEY, make_item


async def _insert_raw(run_key: str, item_id: int, payload: str) -> None:
    async with get_connection() as conn:
        await conn.execute(
            "INSERT INTO batch_queue (run_key, item_id, payload, enqueued_at) VALUES (?, ?, ?, ?)",
            (run_key, item_id, payload, "2026-01-01T00:00:00.000000+00:00"),
        )


class TestPushAndPop:
    """Tests for FIFO push/pop behavior."""

    def test_pop_returns_items_in_push_order(self):
        """Items come back in the order they were pushed."""

        async def scenario():
            await push_items(RUN_KEY, [make_item(3), make_item(1), make_item(2)])
            return [await pop_item(RUN_KEY) for _ in range(3)]

        popped = asyncio.run(scenario())
        assert [item.id for item in popped] == [3, 1, 2]

    def test_pop_on_empty_queue_returns_none(self):
        """An empty queue pops None."""
        assert asyncio.run(pop_item(RUN_KEY)) is None

    def test_push_in_small_batches(self):
        """push_items splits the input but keeps every item."""

        async def scenario():
            pushed = await push_items(RUN_KEY, [make_item(i) for i in range(1, 12)], batch_size=5)
            return pushed, await queue_length(RUN_KEY)

        assert asyncio.run(scenario()) == (11, 11)

    def test_duplicate_ids_are_ignored(self):
        """An id already queued for the run is not queued again."""

        async def scenario():
            await push_items(RUN_KEY, [make_item(1), make_item(2)])
            added = await push_items(RUN_KEY, [make_item(2), make_item(3)])
            return added, await queue_length(RUN_KEY)

        assert asyncio.run(scenario()) == (1, 3)

    def test_queues_are_separate_per_run_key(self):
        """Each run key has its own queue."""

        async def scenario():
            await push_items(RUN_KEY, [make_item(1)])
            await push_items("other/repo", [make_item(1, run_key="other/repo")])
            first = await pop_item(RUN_KEY)
            return first, await queue_length(RUN_KEY), await queue_length("other/repo")

        first, mine, other = asyncio.run(scenario())
        assert first.id == 1
        assert (mine, other) == (0, 1)

    def test_clear_queue(self):
        """clear_queue drops every entry of the run."""

        async def scenario():
            await push_items(RUN_KEY, [make_item(i) for i in range(1, 4)])
            cleared = await clear_queue(RUN_KEY)
            return cleared, await queue_length(RUN_KEY)

        assert asyncio.run(scenario()) == (3, 0)


class TestConcurrentPop:
    """Tests for at-most-once delivery across consumers."""

    def test_each_item_is_popped_once(self):
        """Concurrent consumers never receive the same item."""

        async def consumer(seen):
            while True:
                item = await pop_item(RUN_KEY)
                if item is None:
                    return
                seen.append(item.id)
                await asyncio.sleep(0)

        async def scenario():
            await push_items(RUN_KEY, [make_item(i) for i in range(1, 41)])
            seen = []
            await asyncio.gather(*(consumer(seen) for _ in range(6)))
            return seen

        seen = asyncio.run(scenario())
        assert sorted(seen) == list(range(1, 41))


class TestMalformedEntries:
    """Tests for entries that cannot be decoded."""

    def test_malformed_payload_raises_and_is_removed(self):
        """A bad payload raises ParseFailure and does not block the queue."""

        async def scenario():
            await _insert_raw(RUN_KEY, 99, "not json")
            await push_items(RUN_KEY, [make_item(1)])
            with pytest.raises(ParseFailure):
                await pop_item(RUN_KEY)
            return await pop_item(RUN_KEY)

        item = asyncio.run(scenario())
        assert item.id == 1
