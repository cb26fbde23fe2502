from aiokafka import AIOKafkaConsumer, ConsumerRebalanceListener
from aiokafka.structs import TopicPartition
import asyncio
import logging
from typing import Iterable

from common.messaging.broker import Handler, MessageConsumer


class KafkaMessageConsumer(MessageConsumer):
    """Commits an offset only after the handler succeeded; a failure rewinds to the same record."""

    class SafeRebalanceListener(ConsumerRebalanceListener):
        def __init__(self, lock: asyncio.Lock):
            self.lock = lock

        async def on_partitions_revoked(self, revoked):
            logging.info(f"[REBALANCE] Revoking partitions: {revoked}")
            async with self.lock:
                pass

        async def on_partitions_assigned(self, assigned):
            logging.info(f"[REBALANCE] Assigned new partitions: {assigned}")

    def __init__(self, bootstrap_servers: str, group_id: str, prefix: str = "",
                 consumer_factory=AIOKafkaConsumer, retry_delay: float = 1.0):
        super().__init__(prefix)
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.retry_delay = retry_delay
        self._consumer_factory = consumer_factory
        self._consumer = None
        self._task: asyncio.Task | None = None
        self._rebalance_lock = asyncio.Lock()

    async def start(self, destinations: Iterable[str], handler: Handler):
        topics = self._bind(destinations)
        self._consumer = self._consumer_factory(
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        self._consumer.subscribe(topics, listener=self.SafeRebalanceListener(self._rebalance_lock))
        await self._consumer.start()
        logging.info(f"Kafka Consumer Started on topics: {topics}")
        self._task = asyncio.create_task(self._consume_events(handler))

    async def _consume_events(self, handler: Handler):
        while True:
            try:
                async for message in self._consumer:
                    async with self._rebalance_lock:
                        try:
                            await self._dispatch(message.topic, message.value, handler)
                        except Exception:
                            self._consumer.seek(TopicPartition(message.topic, message.partition), message.offset)
                            raise
                        await self._consumer.commit()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logging.error(f"Error during event consuming: {e}")
                await asyncio.sleep(self.retry_delay)
                continue

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logging.info("Consumer task cancelled")
            self._task = None
        if self._consumer:
            await self._consumer.stop()
            logging.info("Kafka Consumer stopped")
            self._consumer = None
