from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable

from msgspec import msgpack

from common.clients.services import CatalogServiceClient
from common.db.store import KeyValueStore
from common.errors import (
    ConflictError, DBError, DependencyUnavailableError, InsufficientStockError,
    InvalidTransitionError, NotFoundError, Result, ValidationError,
)
from common.messaging.messages import (
    StockDeductionMessage, StockItemMessage, StockRestoreMessage,
)
from order.customers import CustomerDirectory
from order.models import Order, OrderItem, OrderStatus, STOCK_AFFECTING, TRANSITIONS
from order.publisher import StockEventPublisher

ORDER_ID_KEY = "order:id"


def order_key(order_id: int) -> str:
    return f"order:{order_id}"


def merge_items(items: list[tuple[int, int]]) -> list[tuple[int, int]]:
    """Collapse repeated products into one line, keeping first-seen order."""
    merged: dict[int, int] = {}
    for product_id, quantity in items:
        merged[product_id] = merged.get(product_id, 0) + quantity
    return list(merged.items())


def stock_items(order: Order) -> list[StockItemMessage]:
    return [StockItemMessage(product_id=item.product_id, quantity=item.quantity) for item in order.items]


class OrderLogic:
    """Order state machine and the stock messages its transitions emit.

    Stock messages go out after the status write. When `spawn` is given
    (e.g. Quart's add_background_task) they are sent in the background and
    the caller does not wait for the broker.
    """

    def __init__(self, logger, db: KeyValueStore, customers: CustomerDirectory,
                 catalog: CatalogServiceClient, publisher: StockEventPublisher,
                 spawn: Callable | None = None):
        self.logger = logger
        self.db = db
        self.customers = customers
        self.catalog = catalog
        self.publisher = publisher
        self.spawn = spawn

    async def _emit(self, func, *args):
        if self.spawn is None:
            await func(*args)
        else:
            self.spawn(func, *args)

    async def get_order(self, order_id: int) -> Result[Order, NotFoundError | DBError]:
        try:
            entry = await self.db.get(order_key(order_id))
        except DBError as e:
            return None, e
        if not entry:
            return None, NotFoundError(f"Order: {order_id} not found!")
        return msgpack.decode(entry, type=Order), None

    async def list_orders(self, status: OrderStatus | None = None) -> Result[list[Order], DBError]:
        try:
            last_id = int(await self.db.get(ORDER_ID_KEY) or 0)
            orders = []
            for order_id in range(last_id, 0, -1):
                entry = await self.db.get(order_key(order_id))
                if entry:
                    order = msgpack.decode(entry, type=Order)
                    if status is None or order.status is status:
                        orders.append(order)
        except DBError as e:
            return None, e
        return orders, None

    async def create_order(self, customer_id: int, items: list[tuple[int, int]],
                           payment_method: str | None = None, notes: str | None = None) -> Result[Order, Exception]:
        """Validate the customer and every product, then store a PENDING order.

        Stock is only checked here, not reserved; prices are snapshotted.
        """
        if not items:
            return None, ValidationError("Order must contain at least one item")
        if any(quantity <= 0 for _, quantity in items):
            return None, ValidationError("Item quantity must be greater than zero")

        exists, err = await self.customers.exists(customer_id)
        if err:
            return None, err
        if not exists:
            return None, NotFoundError(f"Customer: {customer_id} not found!")

        order_items = []
        for product_id, quantity in merge_items(items):
            try:
                product = await self.catalog.get_product(product_id)
            except DependencyUnavailableError as e:
                self.logger.error(f"Catalog unavailable while creating order for customer {customer_id}: {e}")
                return None, e
            if product is None:
                return None, NotFoundError(f"Product: {product_id} not found!")
            if not product.active:
                return None, ConflictError(f"Product '{product.name}' is unavailable")
            if product.quantity_in_stock < quantity:
                return None, InsufficientStockError(product_id, product.quantity_in_stock, quantity)
            order_items.append(OrderItem(
                product_id=product_id,
                quantity=quantity,
                unit_price=product.price,
                subtotal=product.price * quantity,
            ))

        try:
            order_id = await self.db.incr(ORDER_ID_KEY)
            order = Order(
                id=order_id,
                customer_id=customer_id,
                items=order_items,
                status=OrderStatus.PENDING,
                total_value=sum((item.subtotal for item in order_items), Decimal("0")),
                created_at=datetime.now(timezone.utc),
                payment_method=payment_method,
                notes=notes,
            )
            await self.db.set(order_key(order_id), msgpack.encode(order))
        except DBError as e:
            return None, e
        self.logger.info(f"Order: {order_id} created for customer {customer_id}, total {order.total_value}")
        return order, None

    async def _transition(self, order_id: int, action: str) -> Result[tuple[Order, OrderStatus], Exception]:
        allowed, target, past = TRANSITIONS[action]
        key = order_key(order_id)

        def update(current):
            if current[key] is None:
                return {}, NotFoundError(f"Order: {order_id} not found!")
            order = msgpack.decode(current[key], type=Order)
            previous = order.status
            if previous not in allowed:
                return {}, InvalidTransitionError(order_id, previous.value, past)
            order.status = target
            order.updated_at = datetime.now(timezone.utc)
            return {key: msgpack.encode(order)}, (order, previous)

        try:
            outcome = await self.db.transaction([key], update)
        except DBError as e:
            return None, e
        if isinstance(outcome, Exception):
            return None, outcome
        self.logger.info(f"Order: {order_id} {outcome[1].value} -> {target.value}")
        return outcome, None

    async def confirm_order(self, order_id: int) -> Result[Order, Exception]:
        outcome, err = await self._transition(order_id, "confirm")
        if err:
            return None, err
        order, _ = outcome
        await self._emit(self.publisher.publish, StockDeductionMessage(order_id=order.id, items=stock_items(order)))
        return order, None

    async def process_order(self, order_id: int) -> Result[Order, Exception]:
        outcome, err = await self._transition(order_id, "process")
        return (None, err) if err else (outcome[0], None)

    async def ship_order(self, order_id: int) -> Result[Order, Exception]:
        outcome, err = await self._transition(order_id, "ship")
        return (None, err) if err else (outcome[0], None)

    async def deliver_order(self, order_id: int) -> Result[Order, Exception]:
        outcome, err = await self._transition(order_id, "deliver")
        return (None, err) if err else (outcome[0], None)

    async def cancel_order(self, order_id: int) -> Result[Order, Exception]:
        outcome, err = await self._transition(order_id, "cancel")
        if err:
            return None, err
        order, previous = outcome
        if previous in STOCK_AFFECTING:
            await self._emit(self.publisher.publish, StockRestoreMessage(order_id=order.id, items=stock_items(order)))
        return order, None

    async def delete_order(self, order_id: int) -> Result[bool, Exception]:
        """Only cancelled orders may be deleted."""
        key = order_key(order_id)

        def update(current):
            if current[key] is None:
                return {}, NotFoundError(f"Order: {order_id} not found!")
            order = msgpack.decode(current[key], type=Order)
            if order.status is not OrderStatus.CANCELLED:
                return {}, ConflictError(f"Order: {order_id} must be cancelled before it can be deleted")
            return {key: None}, True

        try:
            outcome = await self.db.transaction([key], update)
        except DBError as e:
            return False, e
        if isinstance(outcome, Exception):
            return False, outcome
        self.logger.info(f"Order: {order_id} deleted")
        return True, None
