from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, computed_field


def utcnow() -> datetime:
    # Naive UTC, matching the DateTime columns.
    return datetime.now(UTC).replace(tzinfo=None)


class LineItem(BaseModel):
    product_id: str
    quantity: int
    unit_price: Decimal


class OrderStatusEnum(StrEnum):
    CREATED = "CREATED"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    FULFILLED = "FULFILLED"
    CANCELLED = "CANCELLED"


class OrderStatusHistory(BaseModel):
    status: OrderStatusEnum
    version: int
    created_at: datetime


class Order(BaseModel):
    id: str
    user_id: str
    items: list[LineItem]
    total_amount: Decimal
    status: OrderStatusEnum
    version: int
    created_at: datetime
    updated_at: datetime
    status_history: list[OrderStatusHistory] = []


class StockLevel(BaseModel):
    product_id: str
    on_hand: int
    reserved: int

    @computed_field
    @property
    def available(self) -> int:
        return self.on_hand - self.reserved


class ReservationStatusEnum(StrEnum):
    RESERVED = "RESERVED"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"
    REVERSED = "REVERSED"


class Reservation(BaseModel):
    id: int
    product_id: str
    order_id: str
    quantity: int
    status: ReservationStatusEnum
    expires_at: datetime
    created_at: datetime


class IdempotencyRecordStatus(StrEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class IdempotencyRecord(BaseModel):
    key: str
    fingerprint: str
    status: IdempotencyRecordStatus
    result: dict | None = None
    created_at: datetime
    expires_at: datetime


class IdempotencyStateEnum(StrEnum):
    NOT_SEEN = "NOT_SEEN"
    SEEN_PENDING = "SEEN_PENDING"
    SEEN_COMPLETED = "SEEN_COMPLETED"


class IdempotencyCheck(BaseModel):
    state: IdempotencyStateEnum
    result: dict | None = None


class PaymentOutcomeEnum(StrEnum):
    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


class PaymentAttempt(BaseModel):
    id: str
    order_id: str
    amount: Decimal
    payment_method: str
    gateway_reference: str | None = None
    outcome: PaymentOutcomeEnum
    failure_reason: str | None = None
    attempt_number: int
    gateway_calls: int
    created_at: datetime
    updated_at: datetime


class EventTypeEnum(StrEnum):
    ORDER_PLACED = "ORDER.PLACED"
    ORDER_FULFILLED = "ORDER.FULFILLED"
    ORDER_CANCELLED = "ORDER.CANCELLED"
    ORDER_REFUND_REQUESTED = "ORDER.REFUND_REQUESTED"
    PAYMENT_CAPTURED = "PAYMENT.CAPTURED"
    PAYMENT_FAILED = "PAYMENT.FAILED"
    PAYMENT_RECONCILIATION_REQUIRED = "PAYMENT.RECONCILIATION_REQUIRED"
    STOCK_RESERVED = "STOCK.RESERVED"
    STOCK_COMMITTED = "STOCK.COMMITTED"
    STOCK_RELEASED = "STOCK.RELEASED"


class OutboxEventStatus(StrEnum):
    PENDING = "PENDING"
    SENT = "SENT"


class OutboxEvent(BaseModel):
    id: int
    partition_key: str
    event_type: EventTypeEnum
    payload: dict
    status: OutboxEventStatus
    created_at: datetime
    sent_at: datetime | None = None


class InboxEventStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"


class InboxEvent(BaseModel):
    id: str
    message_id: str
    event_type: str
    payload: dict
    status: InboxEventStatus
    created_at: datetime
