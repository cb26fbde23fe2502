import asyncio
import logging
import socket
from typing import Iterable

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from common.config import BrokerProvider
from common.messaging.broker import Handler, MessageBroker, MessageConsumer

BODY_FIELD = b"body"


async def ensure_stream(db: redis.Redis, name: str, group: str):
    """Create the stream and its consumer group if they do not exist yet."""
    try:
        await db.xgroup_create(name, group, id="0", mkstream=True)
        logging.debug(f"Stream '{name}' created with group '{group}'")
    except ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise


class RedisStreamsMessageBroker(MessageBroker):
    """Durable-queue transport: each logical destination is a Redis stream."""
    provider = BrokerProvider.REDIS_STREAMS

    def __init__(self, db: redis.Redis, group: str, prefix: str = "", maxlen: int | None = 100_000):
        super().__init__(prefix)
        self.db = db
        self.group = group
        self.maxlen = maxlen

    @classmethod
    def from_url(cls, url: str, group: str, prefix: str = "") -> "RedisStreamsMessageBroker":
        return cls(redis.from_url(url), group, prefix)

    async def _stream(self, name: str) -> str:
        async def create():
            await ensure_stream(self.db, name, self.group)
            return name

        return await self._connections.get_or_create(name, create)

    async def _publish(self, name: str, bodies: list[bytes]) -> list[str]:
        stream = await self._stream(name)
        async with self.db.pipeline(transaction=False) as pipe:
            for body in bodies:
                pipe.xadd(stream, {BODY_FIELD: body}, maxlen=self.maxlen, approximate=True)
            ids = await pipe.execute()
        return [i.decode() if isinstance(i, bytes) else str(i) for i in ids]

    async def is_available(self) -> bool:
        try:
            return bool(await self.db.ping())
        except (RedisError, OSError) as e:
            logging.warning(f"Redis Streams broker is not available: {e}")
            return False

    async def close(self):
        await super().close()
        await self.db.aclose()


class RedisStreamsMessageConsumer(MessageConsumer):
    """Reads with XREADGROUP and acknowledges with XACK after the handler succeeded.

    Entries whose handler failed stay pending and are claimed again once they
    have been idle for `claim_idle_ms`.
    """

    def __init__(self, db: redis.Redis, group: str, prefix: str = "", consumer_name: str | None = None,
                 block_ms: int = 5000, count: int = 10, claim_idle_ms: int = 30000, retry_delay: float = 1.0):
        super().__init__(prefix)
        self.db = db
        self.group = group
        self.consumer_name = consumer_name or f"{socket.gethostname()}-{id(self)}"
        self.block_ms = block_ms
        self.count = count
        self.claim_idle_ms = claim_idle_ms
        self.retry_delay = retry_delay
        self._task: asyncio.Task | None = None

    async def start(self, destinations: Iterable[str], handler: Handler):
        streams = self._bind(destinations)
        for stream in streams:
            await ensure_stream(self.db, stream, self.group)
        self._task = asyncio.create_task(self._consume(streams, handler))
        logging.info(f"Redis Streams consumer '{self.consumer_name}' started on: {streams}")

    async def _handle(self, stream: str, entry_id, fields: dict, handler: Handler):
        body = fields.get(BODY_FIELD)
        if body is None:
            logging.warning(f"Dropping entry {entry_id} without body from '{stream}'")
        else:
            await self._dispatch(stream, body, handler)
        await self.db.xack(stream, self.group, entry_id)

    async def poll(self, streams: list[str], handler: Handler) -> int:
        processed = 0
        for stream in streams:
            _, claimed, *_ = await self.db.xautoclaim(
                stream, self.group, self.consumer_name, min_idle_time=self.claim_idle_ms, count=self.count
            )
            for entry_id, fields in claimed:
                if fields is None:
                    # trimmed by MAXLEN while still pending
                    logging.warning(f"Pending entry {entry_id} of '{stream}' no longer exists, acknowledging")
                    await self.db.xack(stream, self.group, entry_id)
                    continue
                await self._handle(stream, entry_id, fields, handler)
                processed += 1
        result = await self.db.xreadgroup(
            self.group, self.consumer_name, {stream: ">" for stream in streams},
            count=self.count, block=self.block_ms,
        )
        for stream, entries in result or []:
            stream = stream.decode() if isinstance(stream, bytes) else stream
            for entry_id, fields in entries:
                await self._handle(stream, entry_id, fields, handler)
                processed += 1
        return processed

    async def _consume(self, streams: list[str], handler: Handler):
        while True:
            try:
                await self.poll(streams, handler)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logging.error(f"Error during stream consuming: {e}")
                await asyncio.sleep(self.retry_delay)

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logging.info("Redis Streams consumer task cancelled")
            self._task = None
