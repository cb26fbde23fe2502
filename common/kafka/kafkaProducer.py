import asyncio
import logging

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from common.config import BrokerProvider
from common.messaging.broker import MessageBroker

PRODUCER_KEY = "producer"


class KafkaMessageBroker(MessageBroker):
    """Topic-based transport: each logical destination is a Kafka topic."""
    provider = BrokerProvider.KAFKA

    def __init__(self, bootstrap_servers: str, prefix: str = "", producer_factory=AIOKafkaProducer,
                 health_timeout: float = 5.0):
        super().__init__(prefix)
        self.bootstrap_servers = bootstrap_servers
        self._producer_factory = producer_factory
        self.health_timeout = health_timeout

    async def _create_producer(self):
        producer = self._producer_factory(bootstrap_servers=self.bootstrap_servers, acks="all")
        await producer.start()
        logging.info("Kafka Producer started")
        return producer

    @staticmethod
    async def _stop_producer(producer):
        await producer.stop()
        logging.info("Kafka Producer stopped")

    async def _producer(self):
        return await self._connections.get_or_create(
            PRODUCER_KEY, self._create_producer, self._stop_producer
        )

    async def _publish(self, name: str, bodies: list[bytes]) -> list[str]:
        producer = await self._producer()
        futures = [await producer.send(name, value=body) for body in bodies]
        records = await asyncio.gather(*futures)
        return [f"{record.topic}:{record.partition}:{record.offset}" for record in records]

    async def is_available(self) -> bool:
        """Healthy when the cluster answers a metadata request with at least one broker."""
        try:
            async with asyncio.timeout(self.health_timeout):
                producer = await self._producer()
                metadata = await producer.client.fetch_all_metadata()
            if not metadata.brokers():
                logging.warning("Kafka is not available: no brokers in cluster metadata")
                return False
            return True
        except TimeoutError:
            logging.warning(f"Kafka is not available: no metadata after {self.health_timeout}s")
            return False
        except (KafkaError, OSError, RuntimeError) as e:
            logging.warning(f"Kafka is not available: {e}")
            return False
