from dependency_injector import containers, providers

from checkout.application.container import ApplicationContainer
from checkout.presentation.event_consumer_worker import EventConsumerWorker
from checkout.presentation.outbox_worker import OutboxWorker
from checkout.presentation.sweeper_worker import SweeperWorker


class PresentationContainer(containers.DeclarativeContainer):
    config = providers.Configuration()
    application = providers.Container[ApplicationContainer](
        ApplicationContainer, config=config
    )

    outbox_worker = providers.Singleton[OutboxWorker](
        OutboxWorker,
        use_case=application.process_outbox_events_use_case,
        interval=config.outbox.interval_seconds,
    )
    sweeper_worker = providers.Singleton[SweeperWorker](
        SweeperWorker,
        use_case=application.expire_reservations_use_case,
        interval=config.sweeper.interval_seconds,
    )
    event_consumer_worker = providers.Singleton[EventConsumerWorker](
        EventConsumerWorker,
        sync_stock_use_case=application.sync_stock_use_case,
        bootstrap_servers=config.infrastructure.kafka.bootstrap_servers,
        stock_topic=config.infrastructure.kafka.topics.catalog_stock,
        group_id=config.infrastructure.kafka.consumer_group,
    )
