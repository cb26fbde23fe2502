import logging

from quart import Quart, request

from catalog.consumer import StockMessageHandler
from catalog.models import CreateProductRequest
from catalog.stock_logic import StockLedger
from common.config import load_settings
from common.db.store import create_store
from common.http import decode_body, error_response, json_response
from common.messaging.destinations import STOCK_DESTINATIONS
from common.messaging.factory import create_transport
from common.telemetry import configure_logging, configure_telemetry

configure_logging()

settings = load_settings("catalog-service")

app = Quart("catalog-service")

configure_telemetry(settings.service_name, settings.otel_endpoint)

db = create_store(settings.redis_url)
broker, consumer = create_transport(settings.broker)
ledger = StockLedger(app.logger, db)


@app.post('/api/produtos')
async def create_product():
    body, err = await decode_body(CreateProductRequest)
    if err:
        return error_response(err)
    product, err = await ledger.create_product(body.name, body.price, body.quantity_in_stock, body.active)
    if err:
        return error_response(err)
    return json_response(product, 201)


@app.get('/api/produtos/<int:product_id>')
async def find_product(product_id: int):
    product, err = await ledger.get_product(product_id)
    if err:
        return error_response(err)
    return json_response(product)


@app.get('/api/produtos/<int:product_id>/stock-check')
async def check_stock(product_id: int):
    quantity = request.args.get("quantity", default=1, type=int)
    product, err = await ledger.get_product(product_id)
    if err:
        return error_response(err)
    return json_response({
        "productId": product.id,
        "requested": quantity,
        "available": product.quantity_in_stock,
        "hasStock": product.active and product.has_stock(quantity),
    })


@app.post('/api/produtos/<int:product_id>/add/<int:amount>')
async def add_stock(product_id: int, amount: int):
    product, err = await ledger.add_stock(product_id, amount)
    if err:
        return error_response(err)
    return json_response(product)


@app.post('/api/produtos/<int:product_id>/subtract/<int:amount>')
async def remove_stock(product_id: int, amount: int):
    product, err = await ledger.remove_stock(product_id, amount)
    if err:
        return error_response(err)
    return json_response(product)


@app.get('/api/stock/shortfalls')
async def list_shortfalls():
    shortfalls, err = await ledger.shortfalls()
    if err:
        return error_response(err)
    return json_response(shortfalls)


@app.delete('/api/stock/shortfalls/<int:order_id>/<int:product_id>')
async def resolve_shortfall(order_id: int, product_id: int):
    _, err = await ledger.resolve_shortfall(order_id, product_id)
    if err:
        return error_response(err)
    return json_response({"resolved": True})


@app.get('/health')
async def health():
    available = await broker.is_available()
    return json_response({"status": "ok" if available else "degraded", "broker": available},
                         200 if available else 503)


@app.before_serving
async def startup():
    app.logger.info("Starting Catalog Service")
    await consumer.start(STOCK_DESTINATIONS, StockMessageHandler(app.logger, ledger))


@app.after_serving
async def shutdown():
    app.logger.info("Stopping Catalog Service")
    await consumer.stop()
    await broker.close()
    await db.close()


if __name__ == '__main__':
    app.run(host="0.0.0.0", port=8000, debug=True)
    app.logger.setLevel(logging.INFO)
else:
    hypercorn_logger = logging.getLogger('hypercorn.error')
    app.logger.handlers = hypercorn_logger.handlers
    app.logger.setLevel(hypercorn_logger.level)
