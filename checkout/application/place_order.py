import asyncio
import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import IntegrityError

from checkout.application.idempotency_ledger import IdempotencyLedger, payload_fingerprint
from checkout.application.payment_orchestrator import PaymentOrchestrator
from checkout.core.collaborators import CatalogClient, ProductQuote
from checkout.core.exceptions import (
    InsufficientStock,
    OrderNotPayable,
    RequestInProgress,
)
from checkout.core.models import (
    EventTypeEnum,
    IdempotencyCheck,
    IdempotencyStateEnum,
    LineItem,
    Order,
    OrderStatusEnum,
    utcnow,
)
from checkout.core.state_machine import OrderTrigger
from checkout.infrastructure.repositories import OrderRepository, OutboxRepository
from checkout.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class LineItemRequest(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class PlaceOrderDTO(BaseModel):
    user_id: str = Field(min_length=1)
    line_items: list[LineItemRequest] = Field(min_length=1)
    idempotency_key: str = Field(min_length=1, max_length=255)
    payment_method: str = "card"

    @field_validator("line_items")
    @classmethod
    def unique_products(cls, line_items: list[LineItemRequest]) -> list[LineItemRequest]:
        product_ids = [item.product_id for item in line_items]
        if len(product_ids) != len(set(product_ids)):
            raise ValueError("each product may appear only once per order")
        return line_items

    def fingerprint(self) -> str:
        return payload_fingerprint(
            {
                "user_id": self.user_id,
                "line_items": sorted(
                    (item.model_dump() for item in self.line_items),
                    key=lambda item: item["product_id"],
                ),
                "payment_method": self.payment_method,
            }
        )


class RejectionReasonEnum(StrEnum):
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"


class OrderPlacement(BaseModel):
    order_id: str | None = None
    status: OrderStatusEnum | None = None
    rejection_reason: RejectionReasonEnum | None = None
    unavailable_product_id: str | None = None
    replayed: bool = False


class PlaceOrderUseCase:
    """
    Places an order at most once per idempotency key: reserves stock for every
    line item, creates the order awaiting payment and hands it to the payment
    orchestrator. Running out of stock is an ordinary outcome, stored against
    the key like a successful placement.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        idempotency_ledger: IdempotencyLedger,
        catalog_client: CatalogClient,
        payment_orchestrator: PaymentOrchestrator,
        reservation_ttl_seconds: float = 900,
        pending_wait_seconds: float = 5,
        poll_interval: float = 0.05,
    ):
        self._unit_of_work = unit_of_work
        self._ledger = idempotency_ledger
        self._catalog = catalog_client
        self._payments = payment_orchestrator
        self._reservation_ttl = timedelta(seconds=reservation_ttl_seconds)
        self._pending_wait = pending_wait_seconds
        self._poll_interval = poll_interval

    async def __call__(self, request: PlaceOrderDTO) -> OrderPlacement:
        key = request.idempotency_key
        check = await self._wait_for_check(key, request.fingerprint())

        if check.state == IdempotencyStateEnum.SEEN_COMPLETED:
            logger.info(f"Replaying result for idempotency key {key}")
            return await self._replay(check.result)

        try:
            quotes = await self._catalog.get_quotes(
                [item.product_id for item in request.line_items]
            )
            await self._seed_stock(quotes)
            placement = await self._create_order(request, quotes)
        except Exception:
            await self._ledger.abandon(key)
            raise

        if placement.order_id is None:
            return placement

        try:
            await self._payments.authorize(placement.order_id, request.payment_method)
        except OrderNotPayable as e:
            logger.warning(f"Order {placement.order_id} was not charged: {e}")

        async with self._unit_of_work() as uow:
            order = await uow.orders.get_by_id(placement.order_id)

        return OrderPlacement(order_id=order.id, status=order.status)

    async def _wait_for_check(self, key: str, fingerprint: str) -> IdempotencyCheck:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._pending_wait

        while True:
            check = await self._ledger.check_and_reserve(key, fingerprint)
            if check.state != IdempotencyStateEnum.SEEN_PENDING:
                return check
            if loop.time() >= deadline:
                raise RequestInProgress(key)
            await asyncio.sleep(self._poll_interval)

    async def _replay(self, result: dict) -> OrderPlacement:
        placement = OrderPlacement.model_validate({**result, "replayed": True})
        if placement.order_id is None:
            return placement

        async with self._unit_of_work() as uow:
            order = await uow.orders.get_by_id(placement.order_id)

        return placement.model_copy(update={"status": order.status})

    async def _seed_stock(self, quotes: dict[str, ProductQuote]) -> None:
        for quote in quotes.values():
            if quote.stock_on_hand is None:
                continue
            try:
                async with self._unit_of_work() as uow:
                    if await uow.inventory.ensure_stock(quote.product_id, quote.stock_on_hand):
                        logger.info(
                            f"Tracking stock of {quote.product_id}: {quote.stock_on_hand}"
                        )
                    await uow.commit()
            except IntegrityError:
                # Seeded concurrently by another request.
                pass

    async def _create_order(
        self, request: PlaceOrderDTO, quotes: dict[str, ProductQuote]
    ) -> OrderPlacement:
        order_id = str(uuid.uuid4())
        items = [
            LineItem(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=quotes[item.product_id].unit_price,
            )
            for item in request.line_items
        ]
        expires_at = utcnow() + self._reservation_ttl

        async with self._unit_of_work() as uow:
            try:
                # Fixed lock order across concurrent placements.
                for item in sorted(items, key=lambda i: i.product_id):
                    await uow.inventory.reserve(
                        item.product_id, order_id, item.quantity, expires_at
                    )
            except InsufficientStock as e:
                logger.info(
                    f"Rejected order for user {request.user_id}: "
                    f"{e.product_id} is out of stock"
                )
                rejection = OrderPlacement(
                    rejection_reason=RejectionReasonEnum.INSUFFICIENT_STOCK,
                    unavailable_product_id=e.product_id,
                )
            else:
                order = await uow.orders.create(
                    OrderRepository.CreateDTO(
                        id=order_id,
                        user_id=request.user_id,
                        items=items,
                        total_amount=sum(
                            (item.unit_price * item.quantity for item in items),
                            start=Decimal("0"),
                        ),
                    )
                )
                order = await uow.orders.transition(order, OrderTrigger.REQUEST_PAYMENT)
                await self._append_placed_events(uow, order)
                await uow.idempotency.complete(request.idempotency_key, {"order_id": order.id})
                await uow.commit()
                logger.info(f"Order {order.id} placed for user {order.user_id}")
                return OrderPlacement(order_id=order.id, status=order.status)

        # The reservations above were rolled back with the unit of work.
        await self._ledger.complete(
            request.idempotency_key, rejection.model_dump(mode="json", exclude={"replayed"})
        )
        return rejection

    @staticmethod
    async def _append_placed_events(uow, order: Order) -> None:
        await uow.outbox.create(
            OutboxRepository.CreateDTO(
                event_type=EventTypeEnum.ORDER_PLACED,
                partition_key=order.id,
                payload=order.model_dump(mode="json", exclude={"status_history"}),
            )
        )
        await uow.outbox.create(
            OutboxRepository.CreateDTO(
                event_type=EventTypeEnum.STOCK_RESERVED,
                partition_key=order.id,
                payload={
                    "order_id": order.id,
                    "items": [
                        {"product_id": item.product_id, "quantity": item.quantity}
                        for item in order.items
                    ],
                },
            )
        )
