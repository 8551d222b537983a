import logging

from checkout.application.sync_stock import SyncStockUseCase
from checkout.infrastructure.kafka_consumer import KafkaEventConsumer

logger = logging.getLogger(__name__)


class EventConsumerWorker:
    def __init__(
        self,
        sync_stock_use_case: SyncStockUseCase,
        bootstrap_servers: str,
        stock_topic: str,
        group_id: str = "checkout-service-consumer",
    ):
        self._sync_stock_use_case = sync_stock_use_case
        self._stock_topic = stock_topic
        self._consumer = KafkaEventConsumer(
            bootstrap_servers=bootstrap_servers,
            topics=[stock_topic],
            group_id=group_id,
            process_message_callback=self._process_message,
        )

    async def _process_message(self, message_id: str, event_data: dict, topic: str):
        # Catalog messages are flat, enveloped ones carry the data under "payload".
        payload = event_data.get("payload", event_data)

        if topic == self._stock_topic:
            await self._sync_stock_use_case.handle_stock_event(
                message_id=message_id, stock_data=payload
            )
        else:
            logger.warning(f"Unknown topic: {topic}")

    async def run(self):
        await self._consumer.start()
        try:
            await self._consumer.consume()
        finally:
            await self._consumer.stop()
