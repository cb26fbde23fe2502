from typing import Annotated, ClassVar

from msgspec import Meta, Struct, json

from common.messaging.destinations import STOCK_DEDUCTION, STOCK_RESTORE


class StockItemMessage(Struct, rename="camel", frozen=True):
    product_id: int
    quantity: Annotated[int, Meta(gt=0)]


class StockMessage(Struct, rename="camel", frozen=True):
    order_id: int
    items: list[StockItemMessage]


class StockDeductionMessage(StockMessage, frozen=True):
    """Published on confirm; the catalog subtracts every item."""
    kind: ClassVar[str] = "deduction"
    destination: ClassVar[str] = STOCK_DEDUCTION


class StockRestoreMessage(StockMessage, frozen=True):
    """Published when a stock-affecting order is cancelled; the catalog adds every item back."""
    kind: ClassVar[str] = "restore"
    destination: ClassVar[str] = STOCK_RESTORE


MESSAGE_TYPES: dict[str, type[StockMessage]] = {
    STOCK_DEDUCTION: StockDeductionMessage,
    STOCK_RESTORE: StockRestoreMessage,
}

_encoder = json.Encoder()


def encode_message(message: Struct) -> bytes:
    return _encoder.encode(message)


def decode_message(destination: str, body: bytes) -> StockMessage:
    return json.decode(body, type=MESSAGE_TYPES[destination])
