from common.errors import DBError
from common.messaging.broker import MessageBroker
from common.messaging.messages import StockMessage, encode_message
from common.messaging.outbox import Outbox


class StockEventPublisher:
    def __init__(self, logger, broker: MessageBroker, outbox: Outbox):
        self.logger = logger
        self.broker = broker
        self.outbox = outbox

    async def publish(self, message: StockMessage) -> bool:
        """Send a stock message; if the broker refuses it, keep it in the outbox for the relay."""
        body = encode_message(message)
        _, err = await self.broker.send_message(message.destination, body)
        if not err:
            self.logger.info(f"Stock {message.kind} message sent for order {message.order_id}")
            return True
        self.logger.error(f"Error sending stock {message.kind} message for order {message.order_id}: {err}")
        try:
            await self.outbox.record(message.destination, body, err.reason)
        except DBError as e:
            self.logger.critical(f"Stock {message.kind} message for order {message.order_id} could not be "
                                 f"stored in the outbox ({e}); replay manually to '{message.destination}': "
                                 f"{body.decode()}")
        return False
