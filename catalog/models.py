from datetime import datetime
from decimal import Decimal

from msgspec import Meta, Struct
from typing import Annotated

from common.errors import InsufficientStockError
from common.messaging.messages import StockItemMessage

NonNegativeQuantity = Annotated[int, Meta(ge=0)]


class Product(Struct, rename="camel"):
    id: int
    name: str
    price: Decimal
    quantity_in_stock: NonNegativeQuantity = 0
    active: bool = True

    def has_stock(self, quantity: int) -> bool:
        return self.quantity_in_stock >= quantity

    def reduce_stock(self, quantity: int):
        if not self.has_stock(quantity):
            raise InsufficientStockError(self.id, self.quantity_in_stock, quantity)
        self.quantity_in_stock -= quantity

    def add_stock(self, quantity: int):
        self.quantity_in_stock += quantity


class CreateProductRequest(Struct, rename="camel", forbid_unknown_fields=True):
    name: Annotated[str, Meta(min_length=1)]
    price: Decimal
    quantity_in_stock: NonNegativeQuantity = 0
    active: bool = True


class StockShortfall(Struct, rename="camel"):
    """A deduction the ledger could not apply because the product ran out in the meantime."""
    order_id: int
    product_id: int
    requested: int
    available: int
    recorded_at: datetime


class StockApplication(Struct, rename="camel"):
    """What applying one deduction or restore message did to the ledger."""
    order_id: int
    kind: str
    applied: list[StockItemMessage] = []
    missing: list[int] = []
    shortfalls: list[StockShortfall] = []
    # restored products whose deduction for the same order was skipped as a shortfall
    unmatched: list[int] = []
    duplicate: bool = False
