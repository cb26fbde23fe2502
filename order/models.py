import enum
from datetime import datetime
from decimal import Decimal
from typing import Annotated

from msgspec import Meta, Struct


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


# action -> (states it is legal from, resulting state, past tense for messages)
TRANSITIONS: dict[str, tuple[frozenset[OrderStatus], OrderStatus, str]] = {
    "confirm": (frozenset({OrderStatus.PENDING}), OrderStatus.CONFIRMED, "confirmed"),
    "process": (frozenset({OrderStatus.CONFIRMED}), OrderStatus.PROCESSING, "processed"),
    "ship": (frozenset({OrderStatus.CONFIRMED, OrderStatus.PROCESSING}), OrderStatus.SHIPPED, "shipped"),
    "deliver": (frozenset({OrderStatus.SHIPPED}), OrderStatus.DELIVERED, "delivered"),
    "cancel": (
        frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED}),
        OrderStatus.CANCELLED,
        "cancelled",
    ),
}

# States in which the catalog has been told to deduct the order's items.
STOCK_AFFECTING = frozenset({OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED})


class OrderItem(Struct, rename="camel", frozen=True):
    product_id: int
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


class Order(Struct, rename="camel"):
    id: int
    customer_id: int
    items: list[OrderItem]
    status: OrderStatus
    total_value: Decimal
    created_at: datetime
    payment_method: str | None = None
    notes: str | None = None
    updated_at: datetime | None = None


class OrderItemRequest(Struct, rename="camel", forbid_unknown_fields=True):
    product_id: int
    quantity: Annotated[int, Meta(gt=0)]


class CreateOrderRequest(Struct, rename="camel", forbid_unknown_fields=True):
    customer_id: int
    items: list[OrderItemRequest]
    payment_method: str | None = None
    notes: str | None = None
