import asyncio
import logging
import random

from pydantic import BaseModel

from checkout.application.concurrency import retry_on_conflict
from checkout.core.collaborators import ChargeResult, ChargeStatusEnum, PaymentGateway
from checkout.core.exceptions import OrderNotPayable
from checkout.core.models import (
    EventTypeEnum,
    OrderStatusEnum,
    PaymentAttempt,
    PaymentOutcomeEnum,
    ReservationStatusEnum,
)
from checkout.core.state_machine import OrderTrigger
from checkout.infrastructure.repositories import OutboxRepository, PaymentAttemptRepository
from checkout.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


async def park_for_reconciliation(uow, attempt_id: str, reason: str) -> PaymentAttempt:
    """Mark an attempt with an unknown outcome TIMED_OUT and ask for a manual decision."""
    attempt = await uow.payments.mark(
        attempt_id, PaymentOutcomeEnum.TIMED_OUT, failure_reason=reason
    )
    await uow.outbox.create(
        OutboxRepository.CreateDTO(
            event_type=EventTypeEnum.PAYMENT_RECONCILIATION_REQUIRED,
            partition_key=attempt.order_id,
            payload=attempt.model_dump(mode="json"),
        )
    )
    logger.error(
        f"Outcome of payment attempt {attempt_id} for order {attempt.order_id} "
        f"is unknown ({reason}), manual reconciliation required"
    )
    return attempt


class RetryPolicy(BaseModel):
    max_attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 2.0
    deadline_seconds: float = 10.0
    call_timeout_seconds: float = 3.0

    def backoff(self, attempt: int) -> float:
        """Exponential delay after the given 1-based attempt, with equal jitter."""
        delay = min(self.max_delay, self.base_delay * 2 ** (attempt - 1))
        return delay / 2 + random.uniform(0, delay / 2)


class PaymentOrchestrator:
    """
    Charges an order through the payment gateway and applies the outcome.

    A charge that never got an answer is never assumed to have failed: the
    gateway is asked to verify it first, and without a definite answer the
    attempt is parked as TIMED_OUT with the stock still held until somebody
    reconciles it.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        payment_gateway: PaymentGateway,
        retry_policy: RetryPolicy,
        max_conflict_retries: int = 5,
    ):
        self._unit_of_work = unit_of_work
        self._gateway = payment_gateway
        self._policy = retry_policy
        self._max_conflict_retries = max_conflict_retries

    async def authorize(self, order_id: str, payment_method: str) -> PaymentAttempt:
        attempt = await retry_on_conflict(
            lambda: self._open_attempt(order_id, payment_method),
            self._max_conflict_retries,
        )
        logger.info(
            f"Charging {attempt.amount} for order {order_id} (attempt {attempt.id})"
        )

        result = await self._charge(attempt)

        if result.status == ChargeStatusEnum.AUTHORIZED:
            return await self.settle_captured(attempt.id, result.reference)
        if result.status == ChargeStatusEnum.TIMEOUT:
            return await self._resolve_unanswered(attempt)

        return await self.settle_failed(attempt.id, result.reason or "DECLINED")

    async def _open_attempt(self, order_id: str, payment_method: str) -> PaymentAttempt:
        async with self._unit_of_work() as uow:
            order = await uow.orders.get_by_id(order_id)
            if order.status != OrderStatusEnum.AWAITING_PAYMENT:
                raise OrderNotPayable(f"Order {order_id} is {order.status}")

            attempt = await uow.payments.create(
                PaymentAttemptRepository.CreateDTO(
                    order_id=order.id,
                    amount=order.total_amount,
                    payment_method=payment_method,
                )
            )
            # Loses against a concurrent cancel or expiry of the same order.
            await uow.orders.touch(order)
            await uow.commit()
            return attempt

    async def _charge(self, attempt: PaymentAttempt) -> ChargeResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._policy.deadline_seconds

        for number in range(1, self._policy.max_attempts + 1):
            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            async with self._unit_of_work() as uow:
                await uow.payments.increment_calls(attempt.id)
                await uow.commit()

            try:
                async with asyncio.timeout(
                    min(self._policy.call_timeout_seconds, remaining)
                ):
                    result = await self._gateway.charge(
                        attempt.amount, attempt.payment_method, idempotency_key=attempt.id
                    )
            except TimeoutError:
                result = ChargeResult(status=ChargeStatusEnum.TIMEOUT)
            except Exception as e:
                # Whatever went wrong, the charge may have reached the gateway.
                logger.warning(
                    f"Charge for attempt {attempt.id} failed without an answer: {e!r}",
                    exc_info=True,
                )
                result = ChargeResult(status=ChargeStatusEnum.TIMEOUT)

            if result.status != ChargeStatusEnum.TIMEOUT:
                return result

            logger.warning(
                f"Gateway timeout for attempt {attempt.id} "
                f"({number}/{self._policy.max_attempts})"
            )
            if number < self._policy.max_attempts:
                delay = min(self._policy.backoff(number), max(deadline - loop.time(), 0))
                await asyncio.sleep(delay)

        return ChargeResult(status=ChargeStatusEnum.TIMEOUT)

    async def _resolve_unanswered(self, attempt: PaymentAttempt) -> PaymentAttempt:
        if self._gateway.supports_verify:
            try:
                async with asyncio.timeout(self._policy.call_timeout_seconds):
                    result = await self._gateway.verify(attempt.id)
            except TimeoutError:
                result = ChargeResult(status=ChargeStatusEnum.TIMEOUT)
            except Exception as e:
                logger.warning(f"Verify of attempt {attempt.id} failed: {e!r}", exc_info=True)
                result = ChargeResult(status=ChargeStatusEnum.TIMEOUT)

            if result.status == ChargeStatusEnum.AUTHORIZED:
                return await self.settle_captured(attempt.id, result.reference)
            if result.status in (ChargeStatusEnum.NOT_FOUND, ChargeStatusEnum.DECLINED):
                return await self.settle_failed(
                    attempt.id, result.reason or "GATEWAY_TIMEOUT"
                )

        async with self._unit_of_work() as uow:
            attempt = await park_for_reconciliation(uow, attempt.id, "GATEWAY_TIMEOUT")
            await uow.commit()
            return attempt

    async def settle_captured(
        self, attempt_id: str, gateway_reference: str | None
    ) -> PaymentAttempt:
        async with self._unit_of_work() as uow:
            attempt = await uow.payments.get_by_id(attempt_id)
            if attempt.outcome in (PaymentOutcomeEnum.PENDING, PaymentOutcomeEnum.TIMED_OUT):
                await uow.payments.mark(
                    attempt_id,
                    PaymentOutcomeEnum.AUTHORIZED,
                    gateway_reference=gateway_reference,
                )
                await uow.commit()

        return await retry_on_conflict(
            lambda: self._confirm(attempt_id), self._max_conflict_retries
        )

    async def _confirm(self, attempt_id: str) -> PaymentAttempt:
        async with self._unit_of_work() as uow:
            attempt = await uow.payments.get_by_id(attempt_id)
            order = await uow.orders.get_by_id(attempt.order_id)

            if order.status == OrderStatusEnum.CANCELLED:
                # Money was taken for an order that no longer exists.
                logger.error(
                    f"Payment {attempt_id} captured for cancelled order {order.id}, "
                    f"requesting refund"
                )
                attempt = await uow.payments.mark(attempt_id, PaymentOutcomeEnum.CAPTURED)
                await uow.outbox.create(
                    OutboxRepository.CreateDTO(
                        event_type=EventTypeEnum.ORDER_REFUND_REQUESTED,
                        partition_key=order.id,
                        payload={
                            "order_id": order.id,
                            "attempt_id": attempt.id,
                            "amount": str(attempt.amount),
                            "gateway_reference": attempt.gateway_reference,
                        },
                    )
                )
                await uow.commit()
                return attempt

            order = await uow.orders.transition(order, OrderTrigger.CONFIRM_PAYMENT)
            reservations = await uow.inventory.get_by_order(order.id)
            for reservation in reservations:
                await uow.inventory.commit(reservation.product_id, order.id)
            attempt = await uow.payments.mark(attempt_id, PaymentOutcomeEnum.CAPTURED)
            order = await uow.orders.transition(order, OrderTrigger.FULFILL)

            await uow.outbox.create(
                OutboxRepository.CreateDTO(
                    event_type=EventTypeEnum.PAYMENT_CAPTURED,
                    partition_key=order.id,
                    payload=attempt.model_dump(mode="json"),
                )
            )
            await uow.outbox.create(
                OutboxRepository.CreateDTO(
                    event_type=EventTypeEnum.STOCK_COMMITTED,
                    partition_key=order.id,
                    payload={
                        "order_id": order.id,
                        "items": [
                            {"product_id": r.product_id, "quantity": r.quantity}
                            for r in reservations
                        ],
                    },
                )
            )
            await uow.outbox.create(
                OutboxRepository.CreateDTO(
                    event_type=EventTypeEnum.ORDER_FULFILLED,
                    partition_key=order.id,
                    payload=order.model_dump(mode="json", exclude={"status_history"}),
                )
            )
            await uow.commit()
            logger.info(f"Order {order.id} paid and fulfilled")
            return attempt

    async def settle_failed(self, attempt_id: str, reason: str) -> PaymentAttempt:
        return await retry_on_conflict(
            lambda: self._fail(attempt_id, reason), self._max_conflict_retries
        )

    async def _fail(self, attempt_id: str, reason: str) -> PaymentAttempt:
        async with self._unit_of_work() as uow:
            attempt = await uow.payments.get_by_id(attempt_id)
            order = await uow.orders.get_by_id(attempt.order_id)

            attempt = await uow.payments.mark(
                attempt_id, PaymentOutcomeEnum.FAILED, failure_reason=reason
            )
            if order.status == OrderStatusEnum.AWAITING_PAYMENT:
                order = await uow.orders.transition(order, OrderTrigger.FAIL_PAYMENT)

            released = []
            for reservation in await uow.inventory.get_by_order(order.id):
                if reservation.status != ReservationStatusEnum.RESERVED:
                    continue
                if await uow.inventory.release(reservation.product_id, order.id):
                    released.append(
                        {"product_id": reservation.product_id, "quantity": reservation.quantity}
                    )

            await uow.outbox.create(
                OutboxRepository.CreateDTO(
                    event_type=EventTypeEnum.PAYMENT_FAILED,
                    partition_key=order.id,
                    payload=attempt.model_dump(mode="json"),
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
            logger.info(f"Payment for order {order.id} failed: {reason}")
            return attempt
