import logging

from checkout.application.concurrency import retry_on_conflict
from checkout.core.exceptions import CancellationNotAllowed
from checkout.core.models import (
    EventTypeEnum,
    Order,
    OrderStatusEnum,
    PaymentOutcomeEnum,
    ReservationStatusEnum,
)
from checkout.core.state_machine import (
    CANCELLABLE_STATUSES,
    REFUNDABLE_STATUSES,
    OrderTrigger,
)
from checkout.infrastructure.repositories import OutboxRepository
from checkout.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class CancelOrderUseCase:
    """
    Cancels an order that has not been paid yet. Once money has been taken the
    order is not rolled back: its stock is put back and a refund is requested
    from whoever handles ORDER.REFUND_REQUESTED.
    """

    def __init__(self, unit_of_work: UnitOfWork, max_conflict_retries: int = 5):
        self._unit_of_work = unit_of_work
        self._max_conflict_retries = max_conflict_retries

    async def __call__(self, order_id: str) -> Order:
        return await retry_on_conflict(
            lambda: self._cancel(order_id), self._max_conflict_retries
        )

    async def _cancel(self, order_id: str) -> Order:
        async with self._unit_of_work() as uow:
            order = await uow.orders.get_by_id(order_id)

            if order.status == OrderStatusEnum.CANCELLED:
                return order

            if order.status in REFUNDABLE_STATUSES:
                await self._request_refund(uow, order)
                await uow.commit()
                return order

            if order.status not in CANCELLABLE_STATUSES:
                raise CancellationNotAllowed(f"Order {order_id} is {order.status}")

            if await uow.payments.get_active(order_id) is not None:
                raise CancellationNotAllowed(
                    f"Order {order_id} has a payment in progress"
                )

            order = await uow.orders.transition(order, OrderTrigger.CANCEL)
            released = []
            for reservation in await uow.inventory.get_by_order(order_id):
                if await uow.inventory.release(reservation.product_id, order_id):
                    released.append(
                        {"product_id": reservation.product_id, "quantity": reservation.quantity}
                    )

            await uow.outbox.create(
                OutboxRepository.CreateDTO(
                    event_type=EventTypeEnum.ORDER_CANCELLED,
                    partition_key=order.id,
                    payload={"order_id": order.id, "reason": "CANCELLED_BY_CUSTOMER"},
                )
            )
            if released:
                await uow.outbox.create(
                    OutboxRepository.CreateDTO(
                        event_type=EventTypeEnum.STOCK_RELEASED,
                        partition_key=order.id,
                        payload={"order_id": order.id, "items": released},
                    )
                )
            await uow.commit()
            logger.info(f"Order {order_id} cancelled")
            return order

    @staticmethod
    async def _request_refund(uow, order: Order) -> None:
        reversed_items = []
        for reservation in await uow.inventory.get_by_order(order.id):
            if reservation.status != ReservationStatusEnum.COMMITTED:
                continue
            if await uow.inventory.reverse_commit(reservation.product_id, order.id):
                reversed_items.append(
                    {"product_id": reservation.product_id, "quantity": reservation.quantity}
                )

        # Nothing left to reverse means the refund was already requested.
        if not reversed_items:
            return

        attempts = await uow.payments.list_by_order(order.id)
        captured = [a for a in attempts if a.outcome == PaymentOutcomeEnum.CAPTURED]
        await uow.outbox.create(
            OutboxRepository.CreateDTO(
                event_type=EventTypeEnum.ORDER_REFUND_REQUESTED,
                partition_key=order.id,
                payload={
                    "order_id": order.id,
                    "amount": str(order.total_amount),
                    "attempt_id": captured[-1].id if captured else None,
                    "gateway_reference": captured[-1].gateway_reference if captured else None,
                    "items": reversed_items,
                },
            )
        )
        logger.info(f"Refund requested for order {order.id}")
