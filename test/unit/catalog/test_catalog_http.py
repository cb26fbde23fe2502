import unittest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from quart.testing import QuartClient

from catalog.app import app
from catalog.models import Product, StockShortfall
from common.errors import DBError, InsufficientStockError, NotFoundError, ValidationError
from common.http import DB_ERROR_STR


class TestCatalogHttp(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        """Set up a Quart test client before each test."""
        self.test_client: QuartClient = app.test_client()
        self.product = Product(id=1, name="Ração", price=Decimal("59.90"), quantity_in_stock=5)

    async def test_create_product(self):
        with patch("catalog.app.ledger", new_callable=AsyncMock) as mock_ledger:
            mock_ledger.create_product.return_value = (self.product, None)

            response = await self.test_client.post(
                "/api/produtos", json={"name": "Ração", "price": "59.90", "quantityInStock": 5}
            )
            data = await response.get_json()

            self.assertEqual(response.status_code, 201)
            self.assertEqual(data["id"], 1)
            self.assertEqual(data["price"], "59.90")
            self.assertEqual(data["quantityInStock"], 5)
            mock_ledger.create_product.assert_called_once_with("Ração", Decimal("59.90"), 5, True)

    async def test_create_product_rejects_bad_body(self):
        with patch("catalog.app.ledger", new_callable=AsyncMock) as mock_ledger:
            response = await self.test_client.post("/api/produtos", json={"name": "", "price": "1"})

            self.assertEqual(response.status_code, 400)
            mock_ledger.create_product.assert_not_called()

    async def test_find_product(self):
        with patch("catalog.app.ledger", new_callable=AsyncMock) as mock_ledger:
            mock_ledger.get_product.return_value = (self.product, None)

            response = await self.test_client.get("/api/produtos/1")
            data = await response.get_json()

            self.assertEqual(response.status_code, 200)
            self.assertEqual(data["name"], "Ração")
            self.assertTrue(data["active"])
            mock_ledger.get_product.assert_called_once_with(1)

    async def test_find_missing_product(self):
        with patch("catalog.app.ledger", new_callable=AsyncMock) as mock_ledger:
            mock_ledger.get_product.return_value = (None, NotFoundError("Product: 9 not found!"))

            response = await self.test_client.get("/api/produtos/9")
            data = await response.get_json()

            self.assertEqual(response.status_code, 404)
            self.assertEqual(data["error"], "Product: 9 not found!")
            self.assertFalse(data["retryable"])

    async def test_stock_check(self):
        with patch("catalog.app.ledger", new_callable=AsyncMock) as mock_ledger:
            mock_ledger.get_product.return_value = (self.product, None)

            response = await self.test_client.get("/api/produtos/1/stock-check?quantity=6")
            data = await response.get_json()

            self.assertEqual(data, {"productId": 1, "requested": 6, "available": 5, "hasStock": False})

    async def test_subtract_insufficient_stock(self):
        with patch("catalog.app.ledger", new_callable=AsyncMock) as mock_ledger:
            mock_ledger.remove_stock.return_value = (None, InsufficientStockError(1, 5, 6))

            response = await self.test_client.post("/api/produtos/1/subtract/6")

            self.assertEqual(response.status_code, 409)
            mock_ledger.remove_stock.assert_called_once_with(1, 6)

    async def test_add_stock_db_error(self):
        with patch("catalog.app.ledger", new_callable=AsyncMock) as mock_ledger:
            mock_ledger.add_stock.return_value = (None, DBError("connection refused"))

            response = await self.test_client.post("/api/produtos/1/add/3")
            data = await response.get_json()

            self.assertEqual(response.status_code, 500)
            self.assertEqual(data["error"], DB_ERROR_STR)
            self.assertTrue(data["retryable"])

    async def test_add_stock_validation(self):
        with patch("catalog.app.ledger", new_callable=AsyncMock) as mock_ledger:
            mock_ledger.add_stock.return_value = (None, ValidationError("Quantity must be greater than zero"))

            response = await self.test_client.post("/api/produtos/1/add/0")

            self.assertEqual(response.status_code, 400)

    async def test_shortfalls(self):
        shortfall = StockShortfall(order_id=4, product_id=1, requested=3, available=1,
                                   recorded_at=datetime(2026, 1, 2, tzinfo=timezone.utc))
        with patch("catalog.app.ledger", new_callable=AsyncMock) as mock_ledger:
            mock_ledger.shortfalls.return_value = ([shortfall], None)
            mock_ledger.resolve_shortfall.return_value = (True, None)

            response = await self.test_client.get("/api/stock/shortfalls")
            data = await response.get_json()
            self.assertEqual(data[0]["orderId"], 4)
            self.assertEqual(data[0]["requested"], 3)

            response = await self.test_client.delete("/api/stock/shortfalls/4/1")
            self.assertEqual(response.status_code, 200)
            mock_ledger.resolve_shortfall.assert_called_once_with(4, 1)

    async def test_health(self):
        with patch("catalog.app.broker.is_available", new_callable=AsyncMock) as mock_available:
            mock_available.return_value = False

            response = await self.test_client.get("/health")

            self.assertEqual(response.status_code, 503)
