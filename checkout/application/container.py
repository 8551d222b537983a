from dependency_injector import containers, providers

from checkout.application.cancel_order import CancelOrderUseCase
from checkout.application.expire_reservations import ExpireReservationsUseCase
from checkout.application.idempotency_ledger import IdempotencyLedger
from checkout.application.payment_orchestrator import PaymentOrchestrator, RetryPolicy
from checkout.application.place_order import PlaceOrderUseCase
from checkout.application.process_outbox_events import ProcessOutboxEventsUseCase
from checkout.application.reconcile_payment import ReconcilePaymentUseCase
from checkout.application.sync_stock import SyncStockUseCase
from checkout.infrastructure.container import InfrastructureContainer


class ApplicationContainer(containers.DeclarativeContainer):
    config = providers.Configuration()
    infrastructure_container = providers.Container[InfrastructureContainer](
        InfrastructureContainer,
        config=config.infrastructure,
    )

    idempotency_ledger = providers.Singleton[IdempotencyLedger](
        IdempotencyLedger,
        unit_of_work=infrastructure_container.unit_of_work,
        retention_seconds=config.idempotency.retention_seconds,
        pending_ttl_seconds=config.idempotency.pending_ttl_seconds,
    )
    retry_policy = providers.Singleton[RetryPolicy](
        RetryPolicy,
        max_attempts=config.payment.max_attempts,
        base_delay=config.payment.base_delay,
        max_delay=config.payment.max_delay,
        deadline_seconds=config.payment.deadline_seconds,
        call_timeout_seconds=config.payment.call_timeout_seconds,
    )
    payment_orchestrator = providers.Singleton[PaymentOrchestrator](
        PaymentOrchestrator,
        unit_of_work=infrastructure_container.unit_of_work,
        payment_gateway=infrastructure_container.payment_gateway,
        retry_policy=retry_policy,
        max_conflict_retries=config.orders.max_conflict_retries,
    )

    place_order_use_case = providers.Singleton[PlaceOrderUseCase](
        PlaceOrderUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        idempotency_ledger=idempotency_ledger,
        catalog_client=infrastructure_container.catalog_client,
        payment_orchestrator=payment_orchestrator,
        reservation_ttl_seconds=config.inventory.reservation_ttl_seconds,
        pending_wait_seconds=config.idempotency.pending_wait_seconds,
        poll_interval=config.idempotency.poll_interval,
    )
    cancel_order_use_case = providers.Singleton[CancelOrderUseCase](
        CancelOrderUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        max_conflict_retries=config.orders.max_conflict_retries,
    )
    reconcile_payment_use_case = providers.Singleton[ReconcilePaymentUseCase](
        ReconcilePaymentUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        payment_orchestrator=payment_orchestrator,
        stale_attempt_seconds=config.payment.stale_attempt_seconds,
    )
    expire_reservations_use_case = providers.Singleton[ExpireReservationsUseCase](
        ExpireReservationsUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        idempotency_ledger=idempotency_ledger,
        failed_order_grace_seconds=config.sweeper.failed_order_grace_seconds,
        stale_attempt_seconds=config.payment.stale_attempt_seconds,
        batch_size=config.sweeper.batch_size,
        max_conflict_retries=config.orders.max_conflict_retries,
    )
    sync_stock_use_case = providers.Singleton[SyncStockUseCase](
        SyncStockUseCase, unit_of_work=infrastructure_container.unit_of_work
    )
    process_outbox_events_use_case = providers.Singleton[ProcessOutboxEventsUseCase](
        ProcessOutboxEventsUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        kafka_producer=infrastructure_container.kafka_producer,
        topics=providers.Dict(
            ORDER=config.infrastructure.kafka.topics.orders,
            PAYMENT=config.infrastructure.kafka.topics.payments,
            STOCK=config.infrastructure.kafka.topics.inventory,
        ),
        batch_size=config.outbox.batch_size,
    )
