import logging
import unittest
from decimal import Decimal
from unittest.mock import AsyncMock

from msgspec import msgpack

from catalog.models import Product, StockApplication
from catalog.stock_logic import StockLedger, processed_key
from common.db.store import InMemoryStore
from common.errors import DBError, InsufficientStockError, NotFoundError, ValidationError
from common.messaging.messages import StockDeductionMessage, StockItemMessage, StockRestoreMessage


def items(*pairs):
    return [StockItemMessage(product_id=product_id, quantity=quantity) for product_id, quantity in pairs]


class TestProduct(unittest.TestCase):

    def setUp(self):
        self.product = Product(id=1, name="Coleira", price=Decimal("25.00"), quantity_in_stock=10)

    def test_reduce_to_zero(self):
        self.product.reduce_stock(10)
        self.assertEqual(self.product.quantity_in_stock, 0)

    def test_reduce_more_than_available_leaves_stock(self):
        with self.assertRaises(InsufficientStockError) as ctx:
            self.product.reduce_stock(11)

        self.assertEqual(self.product.quantity_in_stock, 10)
        self.assertEqual(ctx.exception.available, 10)
        self.assertEqual(ctx.exception.requested, 11)

    def test_add_stock_is_unbounded(self):
        self.product.add_stock(1_000_000)
        self.assertEqual(self.product.quantity_in_stock, 1_000_010)
        self.assertTrue(self.product.has_stock(1_000_010))
        self.assertFalse(self.product.has_stock(1_000_011))


class TestStockLedger(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.db = InMemoryStore()
        self.ledger = StockLedger(logging.getLogger(__name__), self.db)
        self.food, _ = await self.ledger.create_product("Ração", Decimal("59.90"), 10)
        self.toy, _ = await self.ledger.create_product("Bolinha", Decimal("9.90"), 1)

    async def stock(self, product_id):
        product, _ = await self.ledger.get_product(product_id)
        return product.quantity_in_stock

    async def test_create_product_validation(self):
        product, err = await self.ledger.create_product("Free", Decimal("0"), 1)
        self.assertIsNone(product)
        self.assertIsInstance(err, ValidationError)

        product, err = await self.ledger.create_product("Negative", Decimal("1"), -1)
        self.assertIsInstance(err, ValidationError)

    async def test_get_missing_product(self):
        product, err = await self.ledger.get_product(99)
        self.assertIsNone(product)
        self.assertIsInstance(err, NotFoundError)

    async def test_manual_stock_changes(self):
        product, err = await self.ledger.add_stock(self.food.id, 5)
        self.assertIsNone(err)
        self.assertEqual(product.quantity_in_stock, 15)

        product, err = await self.ledger.remove_stock(self.food.id, 16)
        self.assertIsInstance(err, InsufficientStockError)
        self.assertEqual(await self.stock(self.food.id), 15)

        _, err = await self.ledger.remove_stock(self.food.id, 0)
        self.assertIsInstance(err, ValidationError)

        _, err = await self.ledger.add_stock(99, 1)
        self.assertIsInstance(err, NotFoundError)

    async def test_deduction(self):
        application, err = await self.ledger.apply_deduction(
            StockDeductionMessage(order_id=1, items=items((self.food.id, 3)))
        )

        self.assertIsNone(err)
        self.assertEqual(application.applied, items((self.food.id, 3)))
        self.assertEqual(await self.stock(self.food.id), 7)

    async def test_replayed_deduction_is_a_no_op(self):
        message = StockDeductionMessage(order_id=1, items=items((self.food.id, 3)))
        await self.ledger.apply_deduction(message)

        application, err = await self.ledger.apply_deduction(message)

        self.assertIsNone(err)
        self.assertTrue(application.duplicate)
        self.assertEqual(await self.stock(self.food.id), 7)

    async def test_deduction_and_restore_are_tracked_separately(self):
        await self.ledger.apply_deduction(StockDeductionMessage(order_id=1, items=items((self.food.id, 3))))
        await self.ledger.apply_restore(StockRestoreMessage(order_id=1, items=items((self.food.id, 3))))
        await self.ledger.apply_restore(StockRestoreMessage(order_id=1, items=items((self.food.id, 3))))

        self.assertEqual(await self.stock(self.food.id), 10)
        marker = await self.db.get(processed_key("restore", 1))
        self.assertEqual(msgpack.decode(marker, type=StockApplication).applied, items((self.food.id, 3)))

    async def test_shortfall_is_recorded_and_other_items_applied(self):
        application, err = await self.ledger.apply_deduction(
            StockDeductionMessage(order_id=2, items=items((self.food.id, 2), (self.toy.id, 3), (99, 1)))
        )

        self.assertIsNone(err)
        self.assertEqual(application.applied, items((self.food.id, 2)))
        self.assertEqual(application.missing, [99])
        self.assertEqual(await self.stock(self.food.id), 8)
        self.assertEqual(await self.stock(self.toy.id), 1)

        shortfalls, err = await self.ledger.shortfalls()
        self.assertIsNone(err)
        self.assertEqual(len(shortfalls), 1)
        self.assertEqual((shortfalls[0].order_id, shortfalls[0].product_id), (2, self.toy.id))
        self.assertEqual((shortfalls[0].requested, shortfalls[0].available), (3, 1))

        resolved, err = await self.ledger.resolve_shortfall(2, self.toy.id)
        self.assertTrue(resolved)
        shortfalls, _ = await self.ledger.shortfalls()
        self.assertEqual(shortfalls, [])

    async def test_repeated_product_lines_in_one_message(self):
        await self.ledger.apply_deduction(
            StockDeductionMessage(order_id=3, items=items((self.food.id, 4), (self.food.id, 4), (self.food.id, 4)))
        )

        self.assertEqual(await self.stock(self.food.id), 2)
        shortfalls, _ = await self.ledger.shortfalls()
        self.assertEqual(len(shortfalls), 1)

    async def test_restore_missing_product_is_skipped(self):
        application, err = await self.ledger.apply_restore(
            StockRestoreMessage(order_id=4, items=items((99, 1), (self.toy.id, 2)))
        )

        self.assertIsNone(err)
        self.assertEqual(application.missing, [99])
        self.assertEqual(await self.stock(self.toy.id), 3)

    async def test_storage_failure_is_reported(self):
        self.db.transaction = AsyncMock(side_effect=DBError("down"))

        application, err = await self.ledger.apply_deduction(
            StockDeductionMessage(order_id=5, items=items((self.food.id, 1)))
        )

        self.assertIsNone(application)
        self.assertIsInstance(err, DBError)

    async def test_restore_after_skipped_deduction_is_flagged(self):
        await self.ledger.apply_deduction(
            StockDeductionMessage(order_id=6, items=items((self.food.id, 2), (self.toy.id, 3)))
        )

        application, err = await self.ledger.apply_restore(
            StockRestoreMessage(order_id=6, items=items((self.food.id, 2), (self.toy.id, 3)))
        )

        self.assertIsNone(err)
        self.assertEqual(application.unmatched, [self.toy.id])
        # restore stays unconditional; the shortfall entry points operators at the surplus
        self.assertEqual(await self.stock(self.food.id), 10)
        self.assertEqual(await self.stock(self.toy.id), 4)
        shortfalls, _ = await self.ledger.shortfalls()
        self.assertEqual([(s.order_id, s.product_id) for s in shortfalls], [(6, self.toy.id)])
