import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError, WatchError

from common.db.store import ConcurrencyConflict, InMemoryStore, RedisStore
from common.db.util import retry_db_call
from common.errors import DBError


class TestRetryDbCall(unittest.IsolatedAsyncioTestCase):

    @patch("common.db.util.asyncio.sleep", new_callable=AsyncMock)
    async def test_retries_then_succeeds(self, mock_sleep):
        func = AsyncMock(side_effect=[ConnectionError("down"), b"value"])

        result = await retry_db_call(func, "key")

        self.assertEqual(result, b"value")
        self.assertEqual(func.await_count, 2)
        mock_sleep.assert_awaited_once_with(0.5)

    @patch("common.db.util.asyncio.sleep", new_callable=AsyncMock)
    async def test_gives_up_with_db_error(self, mock_sleep):
        func = AsyncMock(side_effect=ConnectionError("down"))

        with self.assertRaises(DBError) as ctx:
            await retry_db_call(func, "key", retries=3)

        self.assertEqual(str(ctx.exception), "down")
        self.assertEqual(func.await_count, 3)

    async def test_watch_error_is_not_retried(self):
        func = AsyncMock(side_effect=WatchError())

        with self.assertRaises(WatchError):
            await retry_db_call(func)
        func.assert_awaited_once()


class TestInMemoryStore(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.db = InMemoryStore()

    async def test_transaction_applies_writes_and_deletes(self):
        await self.db.set("a", b"1")
        await self.db.set("b", b"2")

        result = await self.db.transaction(["a", "b", "c"], lambda current: ({"a": b"10", "b": None}, current["c"]))

        self.assertIsNone(result)
        self.assertEqual(await self.db.get("a"), b"10")
        self.assertIsNone(await self.db.get("b"))

    async def test_incr_and_hashes(self):
        self.assertEqual(await self.db.incr("id"), 1)
        self.assertEqual(await self.db.incr("id"), 2)

        await self.db.hset("h", "x", b"1")
        await self.db.hset("h", "y", b"2")
        await self.db.hdel("h", "x")
        self.assertEqual(await self.db.hgetall("h"), {"y": b"2"})


class TestRedisStore(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.pipe = MagicMock()
        self.pipe.watch = AsyncMock()
        self.pipe.unwatch = AsyncMock()
        self.pipe.get = AsyncMock(return_value=b"5")
        self.pipe.execute = AsyncMock()
        self.redis = MagicMock()
        self.redis.pipeline.return_value.__aenter__.return_value = self.pipe
        self.db = RedisStore(self.redis)

    async def test_transaction_commits_writes(self):
        result = await self.db.transaction(["k"], lambda current: ({"k": b"6"}, int(current["k"])))

        self.assertEqual(result, 5)
        self.pipe.watch.assert_awaited_once_with("k")
        self.pipe.multi.assert_called_once()
        self.pipe.set.assert_called_once_with("k", b"6")
        self.pipe.execute.assert_awaited_once()

    async def test_transaction_without_writes_unwatches(self):
        await self.db.transaction(["k"], lambda current: ({}, None))

        self.pipe.unwatch.assert_awaited_once()
        self.pipe.execute.assert_not_awaited()

    async def test_transaction_retries_on_conflict(self):
        self.pipe.execute.side_effect = [WatchError(), [True]]

        result = await self.db.transaction(["k"], lambda current: ({"k": None}, "done"))

        self.assertEqual(result, "done")
        self.assertEqual(self.pipe.execute.await_count, 2)
        self.pipe.delete.assert_called_with("k")

    async def test_transaction_gives_up_after_repeated_conflicts(self):
        self.pipe.execute.side_effect = WatchError()

        with self.assertRaises(ConcurrencyConflict):
            await self.db.transaction(["k"], lambda current: ({"k": b"1"}, None), max_retries=3)
        self.assertEqual(self.pipe.execute.await_count, 3)

    async def test_transaction_redis_error(self):
        self.pipe.watch.side_effect = ConnectionError("down")

        with self.assertRaises(DBError):
            await self.db.transaction(["k"], lambda current: ({}, None))
