import asyncio
import logging
from typing import Callable, Iterable

import redis.asyncio as redis
from redis.exceptions import WatchError, RedisError

from common.db.util import retry_db_call
from common.errors import DBError

# An update receives the current raw values of the watched keys and returns the
# writes to apply (key -> bytes, None deletes the key) together with a result.
Update = Callable[[dict[str, bytes | None]], tuple[dict[str, bytes | None], object]]


class ConcurrencyConflict(DBError):
    pass


class KeyValueStore:
    """Byte-valued key/value storage shared by the services.

    `transaction` gives optimistic concurrency: the update is computed from a
    snapshot of the watched keys and only committed if none of them changed in
    the meantime, otherwise it is recomputed.
    """

    async def get(self, key: str) -> bytes | None:
        raise NotImplementedError

    async def set(self, key: str, value: bytes):
        raise NotImplementedError

    async def delete(self, key: str):
        raise NotImplementedError

    async def incr(self, key: str) -> int:
        raise NotImplementedError

    async def hset(self, key: str, field: str, value: bytes):
        raise NotImplementedError

    async def hgetall(self, key: str) -> dict[str, bytes]:
        raise NotImplementedError

    async def hdel(self, key: str, field: str):
        raise NotImplementedError

    async def transaction(self, keys: Iterable[str], update: Update, max_retries: int = 5):
        raise NotImplementedError

    async def close(self):
        pass


class RedisStore(KeyValueStore):
    def __init__(self, db: redis.Redis):
        self.db = db

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.from_url(url))

    async def get(self, key: str) -> bytes | None:
        return await retry_db_call(self.db.get, key)

    async def set(self, key: str, value: bytes):
        await retry_db_call(self.db.set, key, value)

    async def delete(self, key: str):
        await retry_db_call(self.db.delete, key)

    async def incr(self, key: str) -> int:
        return int(await retry_db_call(self.db.incr, key))

    async def hset(self, key: str, field: str, value: bytes):
        await retry_db_call(self.db.hset, key, field, value)

    async def hgetall(self, key: str) -> dict[str, bytes]:
        entries = await retry_db_call(self.db.hgetall, key)
        return {(k.decode() if isinstance(k, bytes) else k): v for k, v in entries.items()}

    async def hdel(self, key: str, field: str):
        await retry_db_call(self.db.hdel, key, field)

    async def transaction(self, keys: Iterable[str], update: Update, max_retries: int = 5):
        keys = list(dict.fromkeys(keys))
        for attempt in range(max_retries):
            try:
                async with self.db.pipeline() as pipe:
                    await pipe.watch(*keys)
                    current = {key: await pipe.get(key) for key in keys}
                    writes, result = update(current)
                    if not writes:
                        await pipe.unwatch()
                        return result
                    pipe.multi()
                    for key, value in writes.items():
                        if value is None:
                            pipe.delete(key)
                        else:
                            pipe.set(key, value)
                    await pipe.execute()
                return result
            except WatchError:
                logging.warning(f"Concurrency conflict on {keys}, attempt {attempt + 1}")
                continue
            except RedisError as e:
                logging.error(f"Redis error during transaction on {keys}: {e}")
                raise DBError(str(e)) from e
        raise ConcurrencyConflict(f"Gave up on {keys} after {max_retries} conflicting attempts")

    async def close(self):
        await self.db.aclose()


class InMemoryStore(KeyValueStore):
    """Process-local store with the same semantics as RedisStore."""

    def __init__(self):
        self._data: dict[str, bytes] = {}
        self._hashes: dict[str, dict[str, bytes]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def set(self, key: str, value: bytes):
        self._data[key] = value

    async def delete(self, key: str):
        self._data.pop(key, None)
        self._hashes.pop(key, None)

    async def incr(self, key: str) -> int:
        async with self._lock:
            value = int(self._data.get(key, b"0")) + 1
            self._data[key] = str(value).encode()
            return value

    async def hset(self, key: str, field: str, value: bytes):
        self._hashes.setdefault(key, {})[field] = value

    async def hgetall(self, key: str) -> dict[str, bytes]:
        return dict(self._hashes.get(key, {}))

    async def hdel(self, key: str, field: str):
        self._hashes.get(key, {}).pop(field, None)

    async def transaction(self, keys: Iterable[str], update: Update, max_retries: int = 5):
        async with self._lock:
            current = {key: self._data.get(key) for key in dict.fromkeys(keys)}
            writes, result = update(current)
            for key, value in (writes or {}).items():
                if value is None:
                    self._data.pop(key, None)
                else:
                    self._data[key] = value
            return result


def create_store(redis_url: str | None) -> KeyValueStore:
    if redis_url:
        return RedisStore.from_url(redis_url)
    logging.warning("No REDIS_URL configured, using in-memory store")
    return InMemoryStore()
