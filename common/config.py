import enum
import os

from msgspec import Struct, field


class BrokerProvider(str, enum.Enum):
    AUTO = "auto"
    IN_MEMORY = "in-memory"
    REDIS_STREAMS = "redis-streams"
    KAFKA = "kafka"


class ResiliencePolicy(Struct, frozen=True):
    max_attempts: int = 3
    base_delay: float = 0.2
    attempt_timeout: float = 5.0
    total_timeout: float = 30.0
    failure_ratio: float = 0.5
    sampling_duration: float = 60.0
    minimum_throughput: int = 2
    break_duration: float = 15.0


class BrokerSettings(Struct, frozen=True):
    provider: BrokerProvider = BrokerProvider.AUTO
    kafka_bootstrap_servers: str | None = None
    redis_url: str | None = None
    destination_prefix: str = ""
    consumer_group: str = "petshop"

    def resolve_provider(self) -> BrokerProvider:
        """Pick a concrete transport, detecting it from the connection settings when set to auto."""
        if self.provider is not BrokerProvider.AUTO:
            return self.provider
        if self.kafka_bootstrap_servers:
            return BrokerProvider.KAFKA
        if self.redis_url:
            return BrokerProvider.REDIS_STREAMS
        return BrokerProvider.IN_MEMORY


class ServiceSettings(Struct, frozen=True):
    service_name: str
    broker: BrokerSettings
    redis_url: str | None = None
    customer_service_url: str = "http://localhost:7071/api/"
    catalog_service_url: str = "http://localhost:7073/api/"
    customer_policy: ResiliencePolicy = field(default_factory=lambda: ResiliencePolicy(total_timeout=20.0))
    catalog_policy: ResiliencePolicy = field(default_factory=lambda: ResiliencePolicy(total_timeout=30.0))
    outbox_relay_interval: float = 10.0
    otel_endpoint: str | None = None


def _env(environ, name: str) -> str | None:
    value = environ.get(name)
    return value.strip() if value and value.strip() else None


def load_settings(service_name: str, environ=None) -> ServiceSettings:
    environ = os.environ if environ is None else environ
    provider = _env(environ, "MESSAGE_BROKER_PROVIDER") or BrokerProvider.AUTO.value
    broker = BrokerSettings(
        provider=BrokerProvider(provider.lower()),
        kafka_bootstrap_servers=_env(environ, "KAFKA_BOOTSTRAP_SERVERS"),
        redis_url=_env(environ, "MESSAGE_BROKER_REDIS_URL") or _env(environ, "REDIS_URL"),
        destination_prefix=environ.get("MESSAGE_BROKER_PREFIX", ""),
        consumer_group=environ.get("MESSAGE_BROKER_GROUP", f"{service_name}-group"),
    )
    return ServiceSettings(
        service_name=service_name,
        broker=broker,
        redis_url=_env(environ, "REDIS_URL"),
        customer_service_url=environ.get("CUSTOMER_SERVICE_URL", "http://localhost:7071/api/"),
        catalog_service_url=environ.get("CATALOG_SERVICE_URL", "http://localhost:7073/api/"),
        customer_policy=ResiliencePolicy(
            total_timeout=float(environ.get("CUSTOMER_SERVICE_TOTAL_TIMEOUT", 20.0))
        ),
        catalog_policy=ResiliencePolicy(
            total_timeout=float(environ.get("CATALOG_SERVICE_TOTAL_TIMEOUT", 30.0))
        ),
        outbox_relay_interval=float(environ.get("OUTBOX_RELAY_INTERVAL", 10.0)),
        otel_endpoint=_env(environ, "OTEL_EXPORTER_ENDPOINT"),
    )
