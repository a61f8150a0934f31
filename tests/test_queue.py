"""
Durable queue tests.

Tests to verify:
1. Entries come back oldest-first with stable persisted ids
2. remove() is idempotent and never touches another entry
3. Contents survive closing and reopening the database
4. Storage errors surface as PersistenceFailure

Run with: pytest tests/test_queue.py -v
"""
import pytest

from tracklink.errors import PersistenceFailure
from tracklink.models import QueueEntry, RequestDescriptor
from tracklink.services.queue import SqliteRequestQueue


def req(n: int) -> RequestDescriptor:
    return RequestDescriptor(url=f"https://example.com/report?id=1&seq={n}")


class TestQueueOrdering:

    @pytest.mark.asyncio
    async def test_empty_queue(self, queue):
        assert await queue.count() == 0
        assert await queue.peek_oldest() is None

    @pytest.mark.asyncio
    async def test_append_returns_increasing_ids(self, queue):
        ids = [await queue.append(req(i)) for i in range(5)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 5
        assert await queue.count() == 5

    @pytest.mark.asyncio
    async def test_peek_returns_oldest_without_removing(self, queue):
        first = await queue.append(req(0))
        await queue.append(req(1))

        entry = await queue.peek_oldest()
        assert isinstance(entry, QueueEntry)
        assert entry.persisted_id == first
        assert entry.descriptor.url == req(0).url
        assert entry.descriptor.persisted_id == first

        # Peeking again yields the same head
        assert (await queue.peek_oldest()).persisted_id == first
        assert await queue.count() == 2

    @pytest.mark.asyncio
    async def test_fifo_drain(self, queue):
        for i in range(4):
            await queue.append(req(i))

        drained = []
        while (entry := await queue.peek_oldest()) is not None:
            drained.append(entry.descriptor.url)
            await queue.remove(entry.persisted_id)

        assert drained == [req(i).url for i in range(4)]
        assert await queue.count() == 0


class TestQueueRemoval:

    @pytest.mark.asyncio
    async def test_remove_twice_is_noop(self, queue):
        a = await queue.append(req(0))
        b = await queue.append(req(1))

        await queue.remove(a)
        await queue.remove(a)  # Second call must not error or remove b

        assert await queue.count() == 1
        assert (await queue.peek_oldest()).persisted_id == b

    @pytest.mark.asyncio
    async def test_remove_unknown_id(self, queue):
        await queue.append(req(0))
        await queue.remove(999999)
        assert await queue.count() == 1

    @pytest.mark.asyncio
    async def test_ids_not_reused_after_remove(self, queue):
        """A removed id is never handed out again."""
        a = await queue.append(req(0))
        await queue.remove(a)
        b = await queue.append(req(1))
        assert b > a

        await queue.remove(a)
        assert await queue.count() == 1

    @pytest.mark.asyncio
    async def test_remove_rejects_non_integer(self, queue):
        await queue.append(req(0))
        with pytest.raises(TypeError):
            await queue.remove("1 OR 1=1")
        assert await queue.count() == 1


class TestQueueDurability:

    @pytest.mark.asyncio
    async def test_contents_survive_reopen(self, db_path):
        q1 = SqliteRequestQueue(db_path)
        await q1.initialize()
        ids = [await q1.append(req(i)) for i in range(3)]
        await q1.close()

        q2 = SqliteRequestQueue(db_path)
        await q2.initialize()
        try:
            assert await q2.count() == 3
            entry = await q2.peek_oldest()
            assert entry.persisted_id == ids[0]
            assert entry.descriptor.url == req(0).url
        finally:
            await q2.close()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, queue):
        await queue.append(req(0))
        await queue.initialize()
        assert await queue.count() == 1

    @pytest.mark.asyncio
    async def test_uninitialized_queue_raises(self, db_path):
        q = SqliteRequestQueue(db_path)
        with pytest.raises(PersistenceFailure):
            await q.append(req(0))
        with pytest.raises(PersistenceFailure):
            await q.peek_oldest()

    @pytest.mark.asyncio
    async def test_unopenable_path_raises(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        q = SqliteRequestQueue(str(blocker / "queue.db"))
        with pytest.raises((PersistenceFailure, OSError)):
            await q.initialize()

    @pytest.mark.asyncio
    async def test_stats(self, queue):
        await queue.append(req(0))
        stats = await queue.get_stats()
        assert stats["total"] == 1
        assert stats["oldest_age_s"] is not None
        assert stats["db_bytes"] > 0
