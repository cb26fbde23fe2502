import asyncio
import logging
import uuid

from msgspec import Struct, msgpack

from common.db.store import KeyValueStore
from common.errors import DBError
from common.messaging.broker import MessageBroker

OUTBOX_KEY = "outbox"


class OutboxEntry(Struct):
    id: str
    destination: str
    body: bytes
    reason: str
    attempts: int = 0


class Outbox:
    """Durable record of messages the broker refused, so their side effects are not lost."""

    def __init__(self, db: KeyValueStore, key: str = OUTBOX_KEY):
        self.db = db
        self.key = key

    async def record(self, destination: str, body: bytes, reason: str) -> OutboxEntry:
        entry = OutboxEntry(id=str(uuid.uuid4()), destination=destination, body=body, reason=reason)
        await self.db.hset(self.key, entry.id, msgpack.encode(entry))
        logging.warning(f"Message to '{destination}' stored in outbox as {entry.id}: {reason}")
        return entry

    async def pending(self) -> list[OutboxEntry]:
        entries = await self.db.hgetall(self.key)
        return [msgpack.decode(raw, type=OutboxEntry) for raw in entries.values()]

    async def remove(self, entry_id: str):
        await self.db.hdel(self.key, entry_id)

    async def update(self, entry: OutboxEntry):
        await self.db.hset(self.key, entry.id, msgpack.encode(entry))


class OutboxRelay:
    def __init__(self, outbox: Outbox, broker: MessageBroker, interval: float = 10.0):
        self.outbox = outbox
        self.broker = broker
        self.interval = interval
        self._task: asyncio.Task | None = None

    async def relay(self) -> int:
        """Resend every pending entry once; returns how many were delivered."""
        delivered = 0
        for entry in await self.outbox.pending():
            _, err = await self.broker.send_message(entry.destination, entry.body)
            if err:
                entry.attempts += 1
                entry.reason = err.reason
                await self.outbox.update(entry)
                continue
            await self.outbox.remove(entry.id)
            logging.info(f"Outbox entry {entry.id} delivered to '{entry.destination}'")
            delivered += 1
        return delivered

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.relay()
            except DBError as e:
                logging.error(f"Outbox relay failed: {e}")

    def start(self):
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logging.info("Outbox relay cancelled")
            self._task = None
