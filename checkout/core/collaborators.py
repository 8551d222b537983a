from decimal import Decimal
from enum import StrEnum
from typing import Protocol

from pydantic import BaseModel


class ChargeStatusEnum(StrEnum):
    AUTHORIZED = "AUTHORIZED"
    DECLINED = "DECLINED"
    TIMEOUT = "TIMEOUT"
    NOT_FOUND = "NOT_FOUND"


class ChargeResult(BaseModel):
    status: ChargeStatusEnum
    reference: str | None = None
    reason: str | None = None


class PaymentGateway(Protocol):
    supports_verify: bool

    async def charge(
        self, amount: Decimal, payment_method: str, idempotency_key: str
    ) -> ChargeResult: ...

    async def verify(self, reference: str) -> ChargeResult: ...


class ProductQuote(BaseModel):
    product_id: str
    unit_price: Decimal
    stock_on_hand: int | None = None


class CatalogClient(Protocol):
    async def get_quotes(self, product_ids: list[str]) -> dict[str, ProductQuote]: ...
