import logging

from quart import Quart, request

from common.clients.services import create_service_clients
from common.config import load_settings
from common.db.store import create_store
from common.errors import ValidationError
from common.http import decode_body, error_response, json_response
from common.messaging.factory import create_transport
from common.messaging.outbox import Outbox, OutboxRelay
from common.telemetry import configure_logging, configure_telemetry
from order.customers import CustomerDirectory
from order.models import CreateOrderRequest, OrderStatus
from order.order_logic import OrderLogic
from order.publisher import StockEventPublisher

configure_logging()

settings = load_settings("order-service")

app = Quart("order-service")

configure_telemetry(settings.service_name, settings.otel_endpoint)

db = create_store(settings.redis_url)
# the order service only publishes; its consumer half stays idle
broker, _ = create_transport(settings.broker)
customer_client, catalog_client = create_service_clients(settings)
outbox = Outbox(db)
relay = OutboxRelay(outbox, broker, settings.outbox_relay_interval)

logic = OrderLogic(
    app.logger,
    db,
    CustomerDirectory(app.logger, customer_client, db),
    catalog_client,
    StockEventPublisher(app.logger, broker, outbox),
    spawn=app.add_background_task,
)


@app.post('/api/pedidos')
async def create_order():
    body, err = await decode_body(CreateOrderRequest)
    if err:
        return error_response(err)
    order, err = await logic.create_order(
        body.customer_id,
        [(item.product_id, item.quantity) for item in body.items],
        body.payment_method,
        body.notes,
    )
    if err:
        return error_response(err)
    return json_response(order, 201)


@app.get('/api/pedidos')
async def list_orders():
    status = request.args.get("status")
    if status is not None:
        try:
            status = OrderStatus(status.upper())
        except ValueError:
            return error_response(ValidationError(f"Unknown order status: {status}"))
    orders, err = await logic.list_orders(status)
    if err:
        return error_response(err)
    return json_response(orders)


@app.get('/api/pedidos/<int:order_id>')
async def find_order(order_id: int):
    order, err = await logic.get_order(order_id)
    if err:
        return error_response(err)
    return json_response(order)


@app.patch('/api/pedidos/<int:order_id>/confirm')
async def confirm_order(order_id: int):
    order, err = await logic.confirm_order(order_id)
    if err:
        return error_response(err)
    return json_response(order)


@app.patch('/api/pedidos/<int:order_id>/process')
async def process_order(order_id: int):
    order, err = await logic.process_order(order_id)
    if err:
        return error_response(err)
    return json_response(order)


@app.patch('/api/pedidos/<int:order_id>/ship')
async def ship_order(order_id: int):
    order, err = await logic.ship_order(order_id)
    if err:
        return error_response(err)
    return json_response(order)


@app.patch('/api/pedidos/<int:order_id>/deliver')
async def deliver_order(order_id: int):
    order, err = await logic.deliver_order(order_id)
    if err:
        return error_response(err)
    return json_response(order)


@app.patch('/api/pedidos/<int:order_id>/cancel')
async def cancel_order(order_id: int):
    order, err = await logic.cancel_order(order_id)
    if err:
        return error_response(err)
    return json_response(order)


@app.delete('/api/pedidos/<int:order_id>')
async def delete_order(order_id: int):
    _, err = await logic.delete_order(order_id)
    if err:
        return error_response(err)
    return json_response({"deleted": True})


@app.get('/health')
async def health():
    available = await broker.is_available()
    return json_response({"status": "ok" if available else "degraded", "broker": available},
                         200 if available else 503)


@app.before_serving
async def startup():
    app.logger.info("Starting Order Service")
    relay.start()


@app.after_serving
async def shutdown():
    app.logger.info("Stopping Order Service")
    await relay.stop()
    await broker.close()
    await customer_client.close()
    await catalog_client.close()
    await db.close()


if __name__ == '__main__':
    app.run(host="0.0.0.0", port=8000, debug=True)
    app.logger.setLevel(logging.INFO)
else:
    hypercorn_logger = logging.getLogger('hypercorn.error')
    app.logger.handlers = hypercorn_logger.handlers
    app.logger.setLevel(hypercorn_logger.level)
