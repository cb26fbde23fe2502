from msgspec import DecodeError

from catalog.stock_logic import StockLedger
from common.messaging.destinations import STOCK_DEDUCTION, STOCK_RESTORE
from common.messaging.messages import decode_message


class StockMessageHandler:
    """Applies stock-deduction and stock-restore deliveries to the ledger.

    Malformed messages are logged and dropped. Storage failures are raised so
    the transport redelivers the message.
    """

    def __init__(self, logger, ledger: StockLedger):
        self.logger = logger
        self.ledger = ledger

    async def __call__(self, destination: str, body: bytes):
        try:
            message = decode_message(destination, body)
        except KeyError:
            self.logger.warning(f"No stock handler for destination '{destination}', message dropped")
            return
        except DecodeError as e:
            self.logger.warning(f"Invalid stock message on '{destination}': {e}")
            return

        if destination == STOCK_DEDUCTION:
            self.logger.info(f"Processing stock deduction for order {message.order_id}")
            _, err = await self.ledger.apply_deduction(message)
        elif destination == STOCK_RESTORE:
            self.logger.info(f"Processing stock restore for order {message.order_id}")
            _, err = await self.ledger.apply_restore(message)
        if err:
            raise err
