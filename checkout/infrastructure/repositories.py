import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy import Row, delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.core.exceptions import (
    InsufficientStock,
    InvalidStockLevel,
    InvariantViolation,
    PaymentInProgress,
    ReservationStateError,
    StaleVersion,
    ValidationError,
)
from checkout.core.models import (
    EventTypeEnum,
    IdempotencyRecord,
    IdempotencyRecordStatus,
    InboxEvent,
    InboxEventStatus,
    LineItem,
    Order,
    OrderStatusEnum,
    OrderStatusHistory,
    OutboxEvent,
    OutboxEventStatus,
    PaymentAttempt,
    PaymentOutcomeEnum,
    Reservation,
    ReservationStatusEnum,
    StockLevel,
    utcnow,
)
from checkout.core.state_machine import (
    TERMINAL_PAYMENT_OUTCOMES,
    OrderTrigger,
    allowed_payment_sources,
    next_status,
)
from checkout.infrastructure.db_schema import (
    idempotency_tbl,
    inbox_tbl,
    order_statuses_tbl,
    orders_tbl,
    outbox_tbl,
    payment_attempts_tbl,
    reservations_tbl,
    stock_tbl,
)


class DoesNotExist(Exception):
    pass


class OrderRepository:
    class CreateDTO(BaseModel):
        id: str
        user_id: str
        items: list[LineItem]
        total_amount: Decimal

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(
        row: Row | None, status_history: list[OrderStatusHistory] | None = None
    ) -> Order:
        if row is None:
            raise DoesNotExist

        return Order(
            id=row._mapping["id"],
            user_id=row._mapping["user_id"],
            items=row._mapping["items"],
            total_amount=row._mapping["total_amount"],
            status=row._mapping["status"],
            version=row._mapping["version"],
            created_at=row._mapping["created_at"],
            updated_at=row._mapping["updated_at"],
            status_history=status_history or [],
        )

    async def create(self, order: CreateDTO) -> Order:
        now = utcnow()
        stmt = insert(orders_tbl).values(
            {
                "id": order.id,
                "user_id": order.user_id,
                "items": [item.model_dump(mode="json") for item in order.items],
                "total_amount": order.total_amount,
                "status": OrderStatusEnum.CREATED,
                "version": 1,
                "created_at": now,
                "updated_at": now,
            }
        )
        await self._session.execute(stmt)
        await self._record_status(order.id, OrderStatusEnum.CREATED, 1, now)

        return await self.get_by_id(order.id)

    async def _record_status(
        self, order_id: str, status: OrderStatusEnum, version: int, created_at: datetime
    ) -> None:
        stmt = insert(order_statuses_tbl).values(
            {
                "order_id": order_id,
                "status": status,
                "version": version,
                "created_at": created_at,
            }
        )
        await self._session.execute(stmt)

    async def _get_status_history(self, order_id: str) -> list[OrderStatusHistory]:
        stmt = (
            select(order_statuses_tbl)
            .where(order_statuses_tbl.c.order_id == order_id)
            .order_by(order_statuses_tbl.c.version)
        )
        result = await self._session.execute(stmt)

        return [
            OrderStatusHistory(
                status=row._mapping["status"],
                version=row._mapping["version"],
                created_at=row._mapping["created_at"],
            )
            for row in result.all()
        ]

    async def get_by_id(self, order_id: str) -> Order:
        stmt = select(orders_tbl).where(orders_tbl.c.id == order_id)
        result = await self._session.execute(stmt)
        row = result.first()

        if row is None:
            raise DoesNotExist(f"Order {order_id} not found")

        return self._construct(row, await self._get_status_history(order_id))

    async def list_by_user(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> list[Order]:
        stmt = (
            select(orders_tbl)
            .where(orders_tbl.c.user_id == user_id)
            .order_by(orders_tbl.c.created_at.desc(), orders_tbl.c.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.all()]

    async def get_ids_by_status(
        self, status: OrderStatusEnum, updated_before: datetime, limit: int = 100
    ) -> list[str]:
        stmt = (
            select(orders_tbl.c.id)
            .where(
                orders_tbl.c.status == status,
                orders_tbl.c.updated_at <= updated_before,
            )
            .order_by(orders_tbl.c.updated_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)

        return list(result.scalars().all())

    async def _compare_and_set(
        self, order: Order, status: OrderStatusEnum, updated_at: datetime
    ) -> None:
        stmt = (
            update(orders_tbl)
            .where(orders_tbl.c.id == order.id, orders_tbl.c.version == order.version)
            .values(
                status=status,
                version=orders_tbl.c.version + 1,
                updated_at=updated_at,
            )
        )
        result = await self._session.execute(stmt)

        if result.rowcount != 1:
            raise StaleVersion(order.id, order.version)

    async def transition(self, order: Order, trigger: OrderTrigger) -> Order:
        """
        Apply a state machine trigger to the order as read at `order.version`.
        Raises InvalidTransition for an illegal trigger and StaleVersion when
        somebody else has changed the order since it was read.
        """
        status = next_status(order.status, trigger)
        now = utcnow()
        await self._compare_and_set(order, status, now)
        await self._record_status(order.id, status, order.version + 1, now)

        history = [
            *order.status_history,
            OrderStatusHistory(status=status, version=order.version + 1, created_at=now),
        ]
        return order.model_copy(
            update={
                "status": status,
                "version": order.version + 1,
                "updated_at": now,
                "status_history": history,
            }
        )

    async def touch(self, order: Order) -> Order:
        """Bump the version without changing the status."""
        now = utcnow()
        await self._compare_and_set(order, order.status, now)

        return order.model_copy(update={"version": order.version + 1, "updated_at": now})


class InventoryRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct_stock(row: Row | None) -> StockLevel:
        if row is None:
            raise DoesNotExist

        return StockLevel(
            product_id=row._mapping["product_id"],
            on_hand=row._mapping["on_hand"],
            reserved=row._mapping["reserved"],
        )

    @staticmethod
    def _construct(row: Row | None) -> Reservation:
        if row is None:
            raise DoesNotExist

        return Reservation(
            id=row._mapping["id"],
            product_id=row._mapping["product_id"],
            order_id=row._mapping["order_id"],
            quantity=row._mapping["quantity"],
            status=row._mapping["status"],
            expires_at=row._mapping["expires_at"],
            created_at=row._mapping["created_at"],
        )

    async def get_stock(self, product_id: str) -> StockLevel:
        stmt = select(stock_tbl).where(stock_tbl.c.product_id == product_id)
        result = await self._session.execute(stmt)
        row = result.first()

        if row is None:
            raise DoesNotExist(f"No stock record for product {product_id}")

        return self._construct_stock(row)

    async def ensure_stock(self, product_id: str, on_hand: int) -> bool:
        """Create the stock record if the product is not tracked yet."""
        stmt = select(stock_tbl.c.product_id).where(stock_tbl.c.product_id == product_id)
        result = await self._session.execute(stmt)
        if result.first() is not None:
            return False

        await self._session.execute(
            insert(stock_tbl).values(
                {
                    "product_id": product_id,
                    "on_hand": max(on_hand, 0),
                    "reserved": 0,
                    "updated_at": utcnow(),
                }
            )
        )
        return True

    async def set_stock(self, product_id: str, on_hand: int) -> StockLevel:
        if on_hand < 0:
            raise InvalidStockLevel(f"Stock of {product_id} cannot be negative")

        stmt = (
            update(stock_tbl)
            .where(
                stock_tbl.c.product_id == product_id,
                stock_tbl.c.reserved <= on_hand,
            )
            .values(on_hand=on_hand, updated_at=utcnow())
        )
        result = await self._session.execute(stmt)

        if result.rowcount != 1:
            try:
                current = await self.get_stock(product_id)
            except DoesNotExist:
                await self._session.execute(
                    insert(stock_tbl).values(
                        {
                            "product_id": product_id,
                            "on_hand": on_hand,
                            "reserved": 0,
                            "updated_at": utcnow(),
                        }
                    )
                )
            else:
                raise InvalidStockLevel(
                    f"Stock of {product_id} cannot drop below {current.reserved} reserved unit(s)"
                )

        return await self.get_stock(product_id)

    async def reserve(
        self, product_id: str, order_id: str, quantity: int, expires_at: datetime
    ) -> Reservation:
        if quantity <= 0:
            raise ValidationError("Reserved quantity must be positive")

        # Availability check and increment happen in one statement.
        stmt = (
            update(stock_tbl)
            .where(
                stock_tbl.c.product_id == product_id,
                stock_tbl.c.on_hand - stock_tbl.c.reserved >= quantity,
            )
            .values(reserved=stock_tbl.c.reserved + quantity, updated_at=utcnow())
        )
        result = await self._session.execute(stmt)

        if result.rowcount != 1:
            raise InsufficientStock(product_id, quantity)

        stmt = (
            insert(reservations_tbl)
            .values(
                {
                    "product_id": product_id,
                    "order_id": order_id,
                    "quantity": quantity,
                    "status": ReservationStatusEnum.RESERVED,
                    "expires_at": expires_at,
                    "created_at": utcnow(),
                }
            )
            .returning(reservations_tbl)
        )
        result = await self._session.execute(stmt)

        return self._construct(result.first())

    async def get(self, product_id: str, order_id: str) -> Reservation | None:
        stmt = select(reservations_tbl).where(
            reservations_tbl.c.product_id == product_id,
            reservations_tbl.c.order_id == order_id,
        )
        result = await self._session.execute(stmt)
        row = result.first()

        if row is None:
            return None

        return self._construct(row)

    async def get_by_order(self, order_id: str) -> list[Reservation]:
        stmt = (
            select(reservations_tbl)
            .where(reservations_tbl.c.order_id == order_id)
            .order_by(reservations_tbl.c.product_id)
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.all()]

    async def get_expired(self, now: datetime, limit: int = 100) -> list[Reservation]:
        stmt = (
            select(reservations_tbl)
            .where(
                reservations_tbl.c.status == ReservationStatusEnum.RESERVED,
                reservations_tbl.c.expires_at < now,
            )
            .order_by(reservations_tbl.c.expires_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.all()]

    async def _compare_and_set(
        self,
        reservation: Reservation,
        expected: ReservationStatusEnum,
        status: ReservationStatusEnum,
    ) -> bool:
        stmt = (
            update(reservations_tbl)
            .where(
                reservations_tbl.c.id == reservation.id,
                reservations_tbl.c.status == expected,
            )
            .values(status=status)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def _adjust_stock(
        self, product_id: str, on_hand_delta: int, reserved_delta: int
    ) -> None:
        stmt = (
            update(stock_tbl)
            .where(stock_tbl.c.product_id == product_id)
            .values(
                on_hand=stock_tbl.c.on_hand + on_hand_delta,
                reserved=stock_tbl.c.reserved + reserved_delta,
                updated_at=utcnow(),
            )
        )
        await self._session.execute(stmt)

    async def commit(self, product_id: str, order_id: str) -> Reservation:
        """Permanently consume reserved stock."""
        reservation = await self.get(product_id, order_id)
        if reservation is None:
            raise ReservationStateError(
                f"No reservation of {product_id} for order {order_id}"
            )

        committed = await self._compare_and_set(
            reservation, ReservationStatusEnum.RESERVED, ReservationStatusEnum.COMMITTED
        )
        if not committed:
            raise ReservationStateError(
                f"Reservation {reservation.id} is {reservation.status}, cannot commit"
            )

        await self._adjust_stock(
            product_id, on_hand_delta=-reservation.quantity, reserved_delta=-reservation.quantity
        )
        return reservation.model_copy(update={"status": ReservationStatusEnum.COMMITTED})

    async def release(self, product_id: str, order_id: str) -> bool:
        """
        Return reserved stock to the available pool. Calling it again, or for a
        reservation that does not exist, is a no-op. Committed stock is only
        given back through reverse_commit.
        """
        reservation = await self.get(product_id, order_id)
        if reservation is None:
            return False

        if reservation.status == ReservationStatusEnum.RESERVED:
            released = await self._compare_and_set(
                reservation, ReservationStatusEnum.RESERVED, ReservationStatusEnum.RELEASED
            )
            if released:
                await self._adjust_stock(
                    product_id, on_hand_delta=0, reserved_delta=-reservation.quantity
                )
                return True
            reservation = await self.get(product_id, order_id)

        if reservation.status in (
            ReservationStatusEnum.COMMITTED,
            ReservationStatusEnum.REVERSED,
        ):
            raise ReservationStateError(
                f"Reservation {reservation.id} is {reservation.status}, use reverse_commit"
            )

        return False

    async def reverse_commit(self, product_id: str, order_id: str) -> bool:
        """Compensating action: put committed stock back on hand."""
        reservation = await self.get(product_id, order_id)
        if reservation is None:
            raise ReservationStateError(
                f"No reservation of {product_id} for order {order_id}"
            )

        if reservation.status == ReservationStatusEnum.REVERSED:
            return False

        reversed_ = await self._compare_and_set(
            reservation, ReservationStatusEnum.COMMITTED, ReservationStatusEnum.REVERSED
        )
        if not reversed_:
            raise ReservationStateError(
                f"Reservation {reservation.id} is {reservation.status}, cannot reverse"
            )

        await self._adjust_stock(
            product_id, on_hand_delta=reservation.quantity, reserved_delta=0
        )
        return True


class IdempotencyRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> IdempotencyRecord:
        if row is None:
            raise DoesNotExist

        return IdempotencyRecord(
            key=row._mapping["idempotency_key"],
            fingerprint=row._mapping["fingerprint"],
            status=row._mapping["status"],
            result=row._mapping["result"],
            created_at=row._mapping["created_at"],
            expires_at=row._mapping["expires_at"],
        )

    async def get(self, key: str) -> IdempotencyRecord | None:
        stmt = select(idempotency_tbl).where(idempotency_tbl.c.idempotency_key == key)
        result = await self._session.execute(stmt)
        row = result.first()

        if row is None:
            return None

        return self._construct(row)

    async def create(
        self, key: str, fingerprint: str, created_at: datetime, expires_at: datetime
    ) -> None:
        """Raises IntegrityError when the key is already taken."""
        stmt = insert(idempotency_tbl).values(
            {
                "idempotency_key": key,
                "fingerprint": fingerprint,
                "status": IdempotencyRecordStatus.PENDING,
                "result": None,
                "created_at": created_at,
                "expires_at": expires_at,
            }
        )
        await self._session.execute(stmt)

    async def complete(self, key: str, result: dict) -> None:
        stmt = (
            update(idempotency_tbl)
            .where(
                idempotency_tbl.c.idempotency_key == key,
                idempotency_tbl.c.status == IdempotencyRecordStatus.PENDING,
            )
            .values(status=IdempotencyRecordStatus.COMPLETED, result=result)
        )
        updated = await self._session.execute(stmt)

        if updated.rowcount != 1:
            raise InvariantViolation(f"Idempotency key {key} is not reserved")

    async def delete(self, key: str, created_at: datetime) -> bool:
        stmt = delete(idempotency_tbl).where(
            idempotency_tbl.c.idempotency_key == key,
            idempotency_tbl.c.created_at == created_at,
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def delete_pending(self, key: str) -> bool:
        stmt = delete(idempotency_tbl).where(
            idempotency_tbl.c.idempotency_key == key,
            idempotency_tbl.c.status == IdempotencyRecordStatus.PENDING,
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def purge_expired(self, now: datetime) -> int:
        stmt = delete(idempotency_tbl).where(idempotency_tbl.c.expires_at <= now)
        result = await self._session.execute(stmt)
        return result.rowcount


class PaymentAttemptRepository:
    class CreateDTO(BaseModel):
        order_id: str
        amount: Decimal
        payment_method: str

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> PaymentAttempt:
        if row is None:
            raise DoesNotExist

        return PaymentAttempt(
            id=row._mapping["id"],
            order_id=row._mapping["order_id"],
            amount=row._mapping["amount"],
            payment_method=row._mapping["payment_method"],
            gateway_reference=row._mapping["gateway_reference"],
            outcome=row._mapping["outcome"],
            failure_reason=row._mapping["failure_reason"],
            attempt_number=row._mapping["attempt_number"],
            gateway_calls=row._mapping["gateway_calls"],
            created_at=row._mapping["created_at"],
            updated_at=row._mapping["updated_at"],
        )

    async def create(self, attempt: CreateDTO) -> PaymentAttempt:
        if await self.get_active(attempt.order_id) is not None:
            raise PaymentInProgress(
                f"Order {attempt.order_id} already has a payment in progress"
            )

        count_stmt = select(func.count()).where(
            payment_attempts_tbl.c.order_id == attempt.order_id
        )
        previous = (await self._session.execute(count_stmt)).scalar_one()

        now = utcnow()
        stmt = (
            insert(payment_attempts_tbl)
            .values(
                {
                    "id": str(uuid.uuid4()),
                    "order_id": attempt.order_id,
                    "active_order_id": attempt.order_id,
                    "amount": attempt.amount,
                    "payment_method": attempt.payment_method,
                    "outcome": PaymentOutcomeEnum.PENDING,
                    "attempt_number": previous + 1,
                    "gateway_calls": 0,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            .returning(payment_attempts_tbl)
        )
        result = await self._session.execute(stmt)

        return self._construct(result.first())

    async def get_by_id(self, attempt_id: str) -> PaymentAttempt:
        stmt = select(payment_attempts_tbl).where(payment_attempts_tbl.c.id == attempt_id)
        result = await self._session.execute(stmt)
        row = result.first()

        if row is None:
            raise DoesNotExist(f"Payment attempt {attempt_id} not found")

        return self._construct(row)

    async def get_active(self, order_id: str) -> PaymentAttempt | None:
        stmt = select(payment_attempts_tbl).where(
            payment_attempts_tbl.c.active_order_id == order_id
        )
        result = await self._session.execute(stmt)
        row = result.first()

        if row is None:
            return None

        return self._construct(row)

    async def list_by_order(self, order_id: str) -> list[PaymentAttempt]:
        stmt = (
            select(payment_attempts_tbl)
            .where(payment_attempts_tbl.c.order_id == order_id)
            .order_by(payment_attempts_tbl.c.attempt_number)
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.all()]

    async def increment_calls(self, attempt_id: str) -> None:
        stmt = (
            update(payment_attempts_tbl)
            .where(payment_attempts_tbl.c.id == attempt_id)
            .values(
                gateway_calls=payment_attempts_tbl.c.gateway_calls + 1,
                updated_at=utcnow(),
            )
        )
        await self._session.execute(stmt)

    async def mark(
        self,
        attempt_id: str,
        outcome: PaymentOutcomeEnum,
        gateway_reference: str | None = None,
        failure_reason: str | None = None,
    ) -> PaymentAttempt:
        values = {"outcome": outcome, "updated_at": utcnow()}
        if gateway_reference is not None:
            values["gateway_reference"] = gateway_reference
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        if outcome in TERMINAL_PAYMENT_OUTCOMES:
            values["active_order_id"] = None

        stmt = (
            update(payment_attempts_tbl)
            .where(
                payment_attempts_tbl.c.id == attempt_id,
                payment_attempts_tbl.c.outcome.in_(allowed_payment_sources(outcome)),
            )
            .values(values)
        )
        result = await self._session.execute(stmt)

        if result.rowcount != 1:
            current = await self.get_by_id(attempt_id)
            raise InvariantViolation(
                f"Payment attempt {attempt_id} cannot move from {current.outcome} to {outcome}"
            )

        return await self.get_by_id(attempt_id)


class OutboxRepository:
    class CreateDTO(BaseModel):
        event_type: EventTypeEnum
        partition_key: str
        payload: dict

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> OutboxEvent:
        if row is None:
            raise DoesNotExist

        return OutboxEvent(
            id=row._mapping["id"],
            partition_key=row._mapping["partition_key"],
            event_type=row._mapping["event_type"],
            payload=row._mapping["payload"],
            status=row._mapping["status"],
            created_at=row._mapping["created_at"],
            sent_at=row._mapping["sent_at"],
        )

    async def create(self, event: CreateDTO) -> OutboxEvent:
        stmt = (
            insert(outbox_tbl)
            .values(
                {
                    "partition_key": event.partition_key,
                    "event_type": event.event_type,
                    "payload": event.payload,
                    "status": OutboxEventStatus.PENDING,
                    "created_at": utcnow(),
                }
            )
            .returning(outbox_tbl)
        )
        result = await self._session.execute(stmt)

        return self._construct(result.first())

    async def get_pending_events(self, limit: int = 100) -> list[OutboxEvent]:
        stmt = (
            select(outbox_tbl)
            .where(outbox_tbl.c.status == OutboxEventStatus.PENDING)
            .order_by(outbox_tbl.c.partition_key, outbox_tbl.c.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.all()]

    async def get_by_partition(self, partition_key: str) -> list[OutboxEvent]:
        stmt = (
            select(outbox_tbl)
            .where(outbox_tbl.c.partition_key == partition_key)
            .order_by(outbox_tbl.c.id)
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.all()]

    async def get_by_id(self, event_id: int) -> OutboxEvent:
        stmt = select(outbox_tbl).where(outbox_tbl.c.id == event_id)
        result = await self._session.execute(stmt)

        return self._construct(result.first())

    async def mark_as_sent(self, event_id: int) -> None:
        stmt = (
            update(outbox_tbl)
            .where(outbox_tbl.c.id == event_id)
            .values(status=OutboxEventStatus.SENT, sent_at=utcnow())
        )
        await self._session.execute(stmt)


class InboxRepository:
    class CreateDTO(BaseModel):
        message_id: str
        event_type: str
        payload: dict

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> InboxEvent:
        if row is None:
            raise DoesNotExist

        return InboxEvent(
            id=row._mapping["id"],
            message_id=row._mapping["message_id"],
            event_type=row._mapping["event_type"],
            payload=row._mapping["payload"],
            status=row._mapping["status"],
            created_at=row._mapping["created_at"],
        )

    async def exists(self, message_id: str) -> bool:
        """Check if message was already processed"""
        stmt = select(inbox_tbl.c.id).where(inbox_tbl.c.message_id == message_id)
        result = await self._session.execute(stmt)
        return result.first() is not None

    async def create(self, event: CreateDTO) -> InboxEvent:
        stmt = (
            insert(inbox_tbl)
            .values(
                {
                    "id": str(uuid.uuid4()),
                    "message_id": event.message_id,
                    "event_type": event.event_type,
                    "payload": event.payload,
                    "status": InboxEventStatus.PENDING,
                    "created_at": utcnow(),
                }
            )
            .returning(inbox_tbl)
        )
        result = await self._session.execute(stmt)

        return self._construct(result.first())

    async def mark_as_processed(self, event_id: str) -> None:
        stmt = (
            update(inbox_tbl)
            .where(inbox_tbl.c.id == event_id)
            .values(status=InboxEventStatus.PROCESSED)
        )
        await self._session.execute(stmt)
