from decimal import Decimal

from msgspec import DecodeError, Struct, json

from common.clients.resilient import ResilientClient
from common.config import ServiceSettings
from common.errors import DependencyUnavailableError


class ProductSnapshot(Struct, rename="camel"):
    id: int
    name: str
    price: Decimal
    quantity_in_stock: int
    active: bool = True


class CustomerServiceClient:
    def __init__(self, client: ResilientClient):
        self.client = client

    async def customer_exists(self, customer_id: int) -> bool:
        response = await self.client.get(f"clientes/{customer_id}")
        if response.status_code == 404:
            return False
        if response.is_success:
            return True
        raise DependencyUnavailableError(self.client.name, f"answered HTTP {response.status_code}")

    async def close(self):
        await self.client.close()


class CatalogServiceClient:
    def __init__(self, client: ResilientClient):
        self.client = client

    async def get_product(self, product_id: int) -> ProductSnapshot | None:
        response = await self.client.get(f"produtos/{product_id}")
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise DependencyUnavailableError(self.client.name, f"answered HTTP {response.status_code}")
        try:
            return json.decode(response.content, type=ProductSnapshot)
        except DecodeError as e:
            raise DependencyUnavailableError(self.client.name, f"sent an invalid product: {e}")

    async def close(self):
        await self.client.close()


def create_service_clients(settings: ServiceSettings) -> tuple[CustomerServiceClient, CatalogServiceClient]:
    customers = ResilientClient("customer-service", settings.customer_service_url, settings.customer_policy)
    catalog = ResilientClient("catalog-service", settings.catalog_service_url, settings.catalog_policy)
    return CustomerServiceClient(customers), CatalogServiceClient(catalog)
