import asyncio
import itertools
import logging
from collections import deque
from typing import Iterable

from msgspec import json

from common.config import BrokerProvider
from common.messaging.broker import Handler, MessageBroker, MessageConsumer


class InMemoryMessageBroker(MessageBroker):
    """Process-local queues, for tests and for running without infrastructure."""
    provider = BrokerProvider.IN_MEMORY

    def __init__(self, prefix: str = "", history_limit: int = 1000, max_pending: int = 10_000):
        super().__init__(prefix)
        self.available = True
        self.history_limit = history_limit
        self.max_pending = max_pending
        self._queues: dict[str, list[bytes]] = {}
        self._history: dict[str, deque[bytes]] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self.arrived = asyncio.Event()

    async def _publish(self, name: str, bodies: list[bytes]) -> list[str]:
        if not self.available:
            raise ConnectionError("In-memory broker is unavailable")
        async with self._lock:
            queue = self._queues.setdefault(name, [])
            queue.extend(bodies)
            if len(queue) > self.max_pending:
                dropped = len(queue) - self.max_pending
                del queue[:dropped]
                logging.warning(f"In-memory queue '{name}' is full, dropped {dropped} oldest message(s)")
            self._history.setdefault(name, deque(maxlen=self.history_limit)).extend(bodies)
            message_ids = [f"{name}-{next(self._ids)}" for _ in bodies]
        self.arrived.set()
        return message_ids

    async def is_available(self) -> bool:
        return self.available

    def get_messages(self, destination: str, type=None) -> list:
        """The last `history_limit` messages sent to a destination, decoded as `type` when given."""
        bodies = list(self._history.get(self.destination_name(destination), []))
        if type is None:
            return bodies
        return [json.decode(body, type=type) for body in bodies]

    def pending(self, name: str) -> int:
        return len(self._queues.get(name, []))

    async def peek(self, name: str) -> bytes | None:
        async with self._lock:
            queue = self._queues.get(name)
            return queue[0] if queue else None

    async def ack(self, name: str):
        async with self._lock:
            queue = self._queues.get(name)
            if queue:
                queue.pop(0)

    async def redeliver(self, destination: str, body: bytes):
        async with self._lock:
            self._queues.setdefault(self.destination_name(destination), []).append(body)
        self.arrived.set()

    def clear(self):
        self._queues.clear()
        self._history.clear()


class InMemoryMessageConsumer(MessageConsumer):
    def __init__(self, broker: InMemoryMessageBroker, poll_interval: float = 0.5):
        super().__init__(broker.prefix)
        self.broker = broker
        self.poll_interval = poll_interval
        self._names: list[str] = []
        self._handler: Handler | None = None
        self._task: asyncio.Task | None = None

    def subscribe(self, destinations: Iterable[str], handler: Handler):
        self._names = self._bind(destinations)
        self._handler = handler

    async def drain(self) -> int:
        """Deliver everything pending; a failing message stays queued for the next round."""
        processed = 0
        for name in self._names:
            while (body := await self.broker.peek(name)) is not None:
                try:
                    await self._dispatch(name, body, self._handler)
                except Exception as e:
                    logging.error(f"Error during message consuming from '{name}': {e}")
                    break
                await self.broker.ack(name)
                processed += 1
        return processed

    async def _consume(self):
        while True:
            self.broker.arrived.clear()
            await self.drain()
            try:
                await asyncio.wait_for(self.broker.arrived.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue

    async def start(self, destinations: Iterable[str], handler: Handler):
        self.subscribe(destinations, handler)
        self._task = asyncio.create_task(self._consume())
        logging.info(f"In-memory consumer started on: {self._names}")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logging.info("In-memory consumer task cancelled")
            self._task = None
