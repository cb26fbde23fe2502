import logging

import redis.asyncio as redis

from common.config import BrokerProvider, BrokerSettings
from common.kafka.kafkaConsumer import KafkaMessageConsumer
from common.kafka.kafkaProducer import KafkaMessageBroker
from common.messaging.broker import MessageBroker, MessageConsumer
from common.messaging.in_memory import InMemoryMessageBroker, InMemoryMessageConsumer
from common.messaging.redis_streams import RedisStreamsMessageBroker, RedisStreamsMessageConsumer


def _in_memory(settings: BrokerSettings):
    logging.warning("In-memory message broker selected: messages never leave this process and are lost "
                    "on restart; configure KAFKA_BOOTSTRAP_SERVERS or REDIS_URL for cross-service delivery")
    broker = InMemoryMessageBroker(settings.destination_prefix)
    return broker, InMemoryMessageConsumer(broker)


def _redis_streams(settings: BrokerSettings):
    if not settings.redis_url:
        raise ValueError("Redis Streams broker requires a Redis URL")
    db = redis.from_url(settings.redis_url)
    broker = RedisStreamsMessageBroker(db, settings.consumer_group, settings.destination_prefix)
    consumer = RedisStreamsMessageConsumer(db, settings.consumer_group, settings.destination_prefix)
    return broker, consumer


def _kafka(settings: BrokerSettings):
    if not settings.kafka_bootstrap_servers:
        raise ValueError("Kafka broker requires bootstrap servers")
    broker = KafkaMessageBroker(settings.kafka_bootstrap_servers, settings.destination_prefix)
    consumer = KafkaMessageConsumer(
        settings.kafka_bootstrap_servers, settings.consumer_group, settings.destination_prefix
    )
    return broker, consumer


TRANSPORTS = {
    BrokerProvider.IN_MEMORY: _in_memory,
    BrokerProvider.REDIS_STREAMS: _redis_streams,
    BrokerProvider.KAFKA: _kafka,
}


def create_transport(settings: BrokerSettings) -> tuple[MessageBroker, MessageConsumer]:
    """Build the broker and the matching consumer for the configured provider."""
    provider = settings.resolve_provider()
    broker, consumer = TRANSPORTS[provider](settings)
    logging.info(f"Message broker initialized: {provider.value}")
    return broker, consumer
