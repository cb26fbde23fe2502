from datetime import datetime, timezone
from decimal import Decimal

from msgspec import msgpack
from opentelemetry import metrics

from catalog.models import Product, StockApplication, StockShortfall
from common.db.store import KeyValueStore
from common.errors import (
    DBError, InsufficientStockError, NotFoundError, Result, ValidationError,
)
from common.messaging.messages import (
    StockDeductionMessage, StockItemMessage, StockMessage, StockRestoreMessage,
)

PRODUCT_ID_KEY = "product:id"
SHORTFALLS_KEY = "stock:shortfalls"

meter = metrics.get_meter(__name__)
shortfall_counter = meter.create_counter(
    "stock.shortfalls", description="Deduction items skipped for lack of stock"
)


def product_key(product_id: int) -> str:
    return f"product:{product_id}"


def processed_key(kind: str, order_id: int) -> str:
    return f"processed:{kind}:{order_id}"


class StockLedger:
    """Owns the per-product stock counters of the catalog service."""

    def __init__(self, logger, db: KeyValueStore):
        self.logger = logger
        self.db = db

    async def create_product(self, name: str, price: Decimal, quantity_in_stock: int = 0,
                             active: bool = True) -> Result[Product, ValidationError | DBError]:
        if price <= 0:
            return None, ValidationError("Price must be greater than zero")
        if quantity_in_stock < 0:
            return None, ValidationError("Stock cannot be negative")
        try:
            product_id = await self.db.incr(PRODUCT_ID_KEY)
            product = Product(id=product_id, name=name, price=price,
                              quantity_in_stock=quantity_in_stock, active=active)
            await self.db.set(product_key(product_id), msgpack.encode(product))
        except DBError as e:
            return None, e
        self.logger.debug(f"Product: {product_id} created")
        return product, None

    async def get_product(self, product_id: int) -> Result[Product, NotFoundError | DBError]:
        try:
            entry = await self.db.get(product_key(product_id))
        except DBError as e:
            return None, e
        if not entry:
            return None, NotFoundError(f"Product: {product_id} not found!")
        return msgpack.decode(entry, type=Product), None

    async def _update_stock(self, product_id: int, change) -> Result[Product, Exception]:
        key = product_key(product_id)

        def update(current):
            if current[key] is None:
                return {}, NotFoundError(f"Product: {product_id} not found!")
            product = msgpack.decode(current[key], type=Product)
            try:
                change(product)
            except InsufficientStockError as e:
                return {}, e
            return {key: msgpack.encode(product)}, product

        try:
            outcome = await self.db.transaction([key], update)
        except DBError as e:
            return None, e
        if isinstance(outcome, Exception):
            return None, outcome
        return outcome, None

    async def add_stock(self, product_id: int, quantity: int) -> Result[Product, Exception]:
        if quantity <= 0:
            return None, ValidationError("Quantity must be greater than zero")
        return await self._update_stock(product_id, lambda product: product.add_stock(quantity))

    async def remove_stock(self, product_id: int, quantity: int) -> Result[Product, Exception]:
        if quantity <= 0:
            return None, ValidationError("Quantity must be greater than zero")
        return await self._update_stock(product_id, lambda product: product.reduce_stock(quantity))

    async def apply_deduction(self, message: StockDeductionMessage) -> Result[StockApplication, DBError]:
        return await self._apply(message)

    async def apply_restore(self, message: StockRestoreMessage) -> Result[StockApplication, DBError]:
        return await self._apply(message)

    async def _apply(self, message: StockMessage) -> Result[StockApplication, DBError]:
        """Apply a stock message once.

        The processed marker for (kind, order) is written in the same
        transaction as the product counters, so a redelivered message finds
        the marker and changes nothing.
        """
        marker = processed_key(message.kind, message.order_id)
        keys = [marker] + [product_key(item.product_id) for item in message.items]
        restoring = isinstance(message, StockRestoreMessage)
        deduction_marker = processed_key(StockDeductionMessage.kind, message.order_id)
        if restoring:
            keys.append(deduction_marker)

        def update(current):
            if current[marker] is not None:
                return {}, StockApplication(order_id=message.order_id, kind=message.kind, duplicate=True)
            application = StockApplication(order_id=message.order_id, kind=message.kind)
            skipped = set()
            if restoring and current[deduction_marker] is not None:
                deduction = msgpack.decode(current[deduction_marker], type=StockApplication)
                skipped = {shortfall.product_id for shortfall in deduction.shortfalls}
            products: dict[int, Product] = {}
            for item in message.items:
                product = products.get(item.product_id)
                if product is None:
                    raw = current[product_key(item.product_id)]
                    if raw is None:
                        application.missing.append(item.product_id)
                        continue
                    product = products[item.product_id] = msgpack.decode(raw, type=Product)
                if restoring:
                    product.add_stock(item.quantity)
                    if item.product_id in skipped and item.product_id not in application.unmatched:
                        application.unmatched.append(item.product_id)
                elif product.has_stock(item.quantity):
                    product.reduce_stock(item.quantity)
                else:
                    application.shortfalls.append(StockShortfall(
                        order_id=message.order_id,
                        product_id=item.product_id,
                        requested=item.quantity,
                        available=product.quantity_in_stock,
                        recorded_at=datetime.now(timezone.utc),
                    ))
                    continue
                application.applied.append(StockItemMessage(product_id=item.product_id, quantity=item.quantity))
            writes = {product_key(pid): msgpack.encode(product) for pid, product in products.items()}
            writes[marker] = msgpack.encode(application)
            return writes, application

        try:
            application = await self.db.transaction(keys, update)
        except DBError as e:
            self.logger.error(f"Could not apply {message.kind} for order {message.order_id}: {e}")
            return None, e
        self._report(application)
        await self._record_shortfalls(application)
        return application, None

    def _report(self, application: StockApplication):
        if application.duplicate:
            self.logger.info(f"Stock {application.kind} for order {application.order_id} already processed, skipping")
            return
        for item in application.applied:
            self.logger.info(f"Stock {application.kind}: product {item.product_id}, "
                             f"quantity {item.quantity}, order {application.order_id}")
        for product_id in application.missing:
            self.logger.warning(f"Product {product_id} not found for stock {application.kind} "
                                f"of order {application.order_id}")
        for shortfall in application.shortfalls:
            self.logger.warning(f"Insufficient stock: product {shortfall.product_id}, available {shortfall.available}, "
                                f"requested {shortfall.requested}, order {shortfall.order_id}")
        for product_id in application.unmatched:
            self.logger.warning(f"Restored product {product_id} for order {application.order_id} although its "
                                f"deduction was skipped; see shortfall {application.order_id}:{product_id}")
        self.logger.info(f"Stock {application.kind} completed for order {application.order_id}")

    async def _record_shortfalls(self, application: StockApplication):
        for shortfall in application.shortfalls:
            shortfall_counter.add(1, {"product.id": shortfall.product_id})
            try:
                await self.db.hset(SHORTFALLS_KEY, f"{shortfall.order_id}:{shortfall.product_id}",
                                   msgpack.encode(shortfall))
            except DBError as e:
                # the processed marker still carries the shortfall
                self.logger.error(f"Could not index shortfall for order {shortfall.order_id}: {e}")

    async def shortfalls(self) -> Result[list[StockShortfall], DBError]:
        try:
            entries = await self.db.hgetall(SHORTFALLS_KEY)
        except DBError as e:
            return None, e
        found = [msgpack.decode(raw, type=StockShortfall) for raw in entries.values()]
        return sorted(found, key=lambda s: s.recorded_at), None

    async def resolve_shortfall(self, order_id: int, product_id: int) -> Result[bool, DBError]:
        """Drop a shortfall from the reconciliation list once an operator handled it."""
        try:
            await self.db.hdel(SHORTFALLS_KEY, f"{order_id}:{product_id}")
        except DBError as e:
            return False, e
        return True, None
