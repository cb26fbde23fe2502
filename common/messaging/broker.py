import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable

from msgspec import Struct, json
from opentelemetry import trace

from common.config import BrokerProvider
from common.errors import MessagingError, Result
from common.messaging.destinations import normalize_destination

tracer = trace.get_tracer(__name__)

# Consumers hand every delivery to a handler as (logical destination, raw body).
# Raising from the handler leaves the delivery unacknowledged so it is redelivered.
Handler = Callable[[str, bytes], Awaitable[None]]


class SendReceipt(Struct, frozen=True):
    destination: str
    count: int
    message_ids: list[str] = []


class ConnectionCache:
    """Per-destination transport handles, created lazily and closed with their broker."""

    def __init__(self):
        self._entries: dict[str, tuple[Any, Callable[[Any], Awaitable[None]] | None]] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    async def get_or_create(self, key: str, factory: Callable[[], Awaitable[Any]], closer=None):
        async with self._lock:
            if self._closed:
                raise RuntimeError("Connection cache is closed")
            entry = self._entries.get(key)
            if entry is None:
                entry = (await factory(), closer)
                self._entries[key] = entry
                logging.debug(f"Connection for '{key}' created")
            return entry[0]

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def close(self):
        async with self._lock:
            self._closed = True
            entries, self._entries = self._entries, {}
        for key, (resource, closer) in entries.items():
            if closer is None:
                continue
            try:
                await closer(resource)
            except Exception as e:
                logging.warning(f"Error while closing connection for '{key}': {e}")


def serialize_payload(payload) -> bytes:
    if isinstance(payload, bytes):
        return payload
    return json.encode(payload)


class MessageBroker:
    """Send side of a transport.

    Every send returns a `(receipt, err)` pair: a transport failure is reported
    as a MessagingError and never as a receipt.
    """
    provider: BrokerProvider

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self._connections = ConnectionCache()

    def destination_name(self, destination: str) -> str:
        return normalize_destination(destination, self.prefix)

    async def send_message(self, destination: str, payload) -> Result[SendReceipt, MessagingError]:
        return await self.send_batch(destination, [payload])

    async def send_batch(self, destination: str, payloads: Iterable) -> Result[SendReceipt, MessagingError]:
        name = self.destination_name(destination)
        bodies = [serialize_payload(payload) for payload in payloads]
        if not bodies:
            return SendReceipt(destination=name, count=0), None
        with tracer.start_as_current_span(f"send {name}") as span:
            span.set_attribute("messaging.system", self.provider.value)
            span.set_attribute("messaging.destination.name", name)
            span.set_attribute("messaging.batch.message_count", len(bodies))
            try:
                message_ids = await self._publish(name, bodies)
            except Exception as e:
                span.record_exception(e)
                logging.error(f"Error sending {len(bodies)} message(s) to '{name}': {e}")
                return None, MessagingError(name, str(e) or type(e).__name__)
        logging.info(f"{len(bodies)} message(s) sent to '{name}' via {self.provider.value}")
        return SendReceipt(destination=name, count=len(bodies), message_ids=message_ids), None

    async def _publish(self, name: str, bodies: list[bytes]) -> list[str]:
        raise NotImplementedError

    async def is_available(self) -> bool:
        raise NotImplementedError

    async def close(self):
        await self._connections.close()


class MessageConsumer:
    """Receive side of a transport, delivering at least once."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self._logical: dict[str, str] = {}

    def _bind(self, destinations: Iterable[str]) -> list[str]:
        names = []
        for destination in destinations:
            name = normalize_destination(destination, self.prefix)
            self._logical[name] = destination
            names.append(name)
        return names

    async def _dispatch(self, name: str, body: bytes, handler: Handler):
        destination = self._logical.get(name, name)
        with tracer.start_as_current_span(f"process {name}") as span:
            span.set_attribute("messaging.destination.name", name)
            await handler(destination, body)

    async def start(self, destinations: Iterable[str], handler: Handler):
        raise NotImplementedError

    async def stop(self):
        raise NotImplementedError
