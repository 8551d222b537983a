import logging
from datetime import timedelta

from pydantic import BaseModel

from checkout.application.concurrency import retry_on_conflict
from checkout.application.idempotency_ledger import IdempotencyLedger
from checkout.application.payment_orchestrator import park_for_reconciliation
from checkout.core.exceptions import ConcurrencyConflict
from checkout.core.models import (
    EventTypeEnum,
    OrderStatusEnum,
    PaymentOutcomeEnum,
    ReservationStatusEnum,
    utcnow,
)
from checkout.core.state_machine import OrderTrigger
from checkout.infrastructure.repositories import OutboxRepository
from checkout.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    expired_orders: list[str] = []
    released_reservations: int = 0
    closed_orders: list[str] = []
    parked_attempts: list[str] = []
    purged_keys: int = 0


class ExpireReservationsUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        idempotency_ledger: IdempotencyLedger,
        failed_order_grace_seconds: float = 300,
        stale_attempt_seconds: float = 60,
        batch_size: int = 100,
        max_conflict_retries: int = 5,
    ):
        self._unit_of_work = unit_of_work
        self._ledger = idempotency_ledger
        self._failed_order_grace = timedelta(seconds=failed_order_grace_seconds)
        self._stale_attempt = timedelta(seconds=stale_attempt_seconds)
        self._batch_size = batch_size
        self._max_conflict_retries = max_conflict_retries

    async def __call__(self) -> SweepReport:
        """
        Give back stock held by orders that were never paid, close orders whose
        payment failed and forget expired idempotency keys.
        """
        report = SweepReport()
        now = utcnow()

        async with self._unit_of_work() as uow:
            expired = await uow.inventory.get_expired(now, limit=self._batch_size)
            failed_order_ids = await uow.orders.get_ids_by_status(
                OrderStatusEnum.PAYMENT_FAILED,
                updated_before=now - self._failed_order_grace,
                limit=self._batch_size,
            )

        for order_id in dict.fromkeys(r.order_id for r in expired):
            try:
                await retry_on_conflict(
                    lambda: self._expire_order(order_id, report),
                    self._max_conflict_retries,
                )
            except ConcurrencyConflict as e:
                logger.warning(f"Skipping order {order_id} in this sweep: {e}")

        for order_id in failed_order_ids:
            try:
                await retry_on_conflict(
                    lambda: self._close_order(order_id, report),
                    self._max_conflict_retries,
                )
            except ConcurrencyConflict as e:
                logger.warning(f"Skipping order {order_id} in this sweep: {e}")

        report.purged_keys = await self._ledger.purge_expired()

        if any(
            (
                report.expired_orders,
                report.released_reservations,
                report.closed_orders,
                report.parked_attempts,
            )
        ):
            logger.info(
                f"Sweep: expired {len(report.expired_orders)} order(s), "
                f"released {report.released_reservations} reservation(s), "
                f"closed {len(report.closed_orders)} failed order(s), "
                f"parked {len(report.parked_attempts)} abandoned payment(s)"
            )
        return report

    async def _expire_order(self, order_id: str, report: SweepReport) -> None:
        async with self._unit_of_work() as uow:
            order = await uow.orders.get_by_id(order_id)

            if order.status == OrderStatusEnum.AWAITING_PAYMENT:
                attempt = await uow.payments.get_active(order_id)
                if attempt is not None:
                    # The charge may have gone through; reconciliation decides.
                    if (
                        attempt.outcome == PaymentOutcomeEnum.PENDING
                        and attempt.updated_at + self._stale_attempt <= utcnow()
                    ):
                        await park_for_reconciliation(
                            uow, attempt.id, "ABANDONED_CHARGE"
                        )
                        await uow.commit()
                        report.parked_attempts.append(attempt.id)
                    else:
                        logger.info(
                            f"Order {order_id} has a payment in progress, not expiring"
                        )
                    return
                order = await uow.orders.transition(order, OrderTrigger.EXPIRE)
                await uow.outbox.create(
                    OutboxRepository.CreateDTO(
                        event_type=EventTypeEnum.ORDER_CANCELLED,
                        partition_key=order.id,
                        payload={"order_id": order.id, "reason": "PAYMENT_WINDOW_EXPIRED"},
                    )
                )
                expired_order = True
            else:
                expired_order = False

            released = []
            for reservation in await uow.inventory.get_by_order(order_id):
                if reservation.status != ReservationStatusEnum.RESERVED:
                    continue
                if await uow.inventory.release(reservation.product_id, order_id):
                    released.append(
                        {"product_id": reservation.product_id, "quantity": reservation.quantity}
                    )

            if released:
                await uow.outbox.create(
                    OutboxRepository.CreateDTO(
                        event_type=EventTypeEnum.STOCK_RELEASED,
                        partition_key=order_id,
                        payload={"order_id": order_id, "items": released},
                    )
                )
            await uow.commit()

        if expired_order:
            report.expired_orders.append(order_id)
        report.released_reservations += len(released)

    async def _close_order(self, order_id: str, report: SweepReport) -> None:
        async with self._unit_of_work() as uow:
            order = await uow.orders.get_by_id(order_id)
            if order.status != OrderStatusEnum.PAYMENT_FAILED:
                return

            order = await uow.orders.transition(order, OrderTrigger.CLOSE)
            await uow.outbox.create(
                OutboxRepository.CreateDTO(
                    event_type=EventTypeEnum.ORDER_CANCELLED,
                    partition_key=order.id,
                    payload={"order_id": order.id, "reason": "PAYMENT_FAILED"},
                )
            )
            await uow.commit()

        report.closed_orders.append(order_id)
