import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

from catalog.consumer import StockMessageHandler
from common.errors import DBError
from common.messaging.destinations import STOCK_DEDUCTION, STOCK_RESTORE
from common.messaging.messages import StockDeductionMessage, StockItemMessage, StockRestoreMessage, encode_message


class TestStockMessageHandler(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.ledger = MagicMock()
        self.ledger.apply_deduction = AsyncMock(return_value=(MagicMock(), None))
        self.ledger.apply_restore = AsyncMock(return_value=(MagicMock(), None))
        self.handler = StockMessageHandler(logging.getLogger(__name__), self.ledger)
        self.items = [StockItemMessage(product_id=1, quantity=2)]

    async def test_deduction(self):
        message = StockDeductionMessage(order_id=7, items=self.items)

        await self.handler(STOCK_DEDUCTION, encode_message(message))

        self.ledger.apply_deduction.assert_awaited_once_with(message)
        self.ledger.apply_restore.assert_not_awaited()

    async def test_restore(self):
        message = StockRestoreMessage(order_id=7, items=self.items)

        await self.handler(STOCK_RESTORE, encode_message(message))

        self.ledger.apply_restore.assert_awaited_once_with(message)

    async def test_wire_format(self):
        body = b'{"orderId": 7, "items": [{"productId": 1, "quantity": 2}]}'

        await self.handler(STOCK_DEDUCTION, body)

        self.ledger.apply_deduction.assert_awaited_once_with(StockDeductionMessage(order_id=7, items=self.items))

    async def test_malformed_message_is_dropped(self):
        await self.handler(STOCK_DEDUCTION, b'{"orderId": "seven"}')
        await self.handler("unknown-destination", b"{}")

        self.ledger.apply_deduction.assert_not_awaited()

    async def test_storage_failure_is_raised_for_redelivery(self):
        self.ledger.apply_deduction.return_value = (None, DBError("down"))

        with self.assertRaises(DBError):
            await self.handler(STOCK_DEDUCTION, encode_message(StockDeductionMessage(order_id=7, items=self.items)))

    async def test_non_positive_quantity_is_dropped(self):
        for quantity in (0, -10):
            body = b'{"orderId": 1, "items": [{"productId": 1, "quantity": %d}]}' % quantity

            await self.handler(STOCK_RESTORE, body)
            await self.handler(STOCK_DEDUCTION, body)

        self.ledger.apply_restore.assert_not_awaited()
        self.ledger.apply_deduction.assert_not_awaited()
