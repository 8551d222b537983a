import logging

from checkout.core.models import OutboxEvent
from checkout.infrastructure.kafka_producer import KafkaProducer
from checkout.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class ProcessOutboxEventsUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        kafka_producer: KafkaProducer,
        topics: dict[str, str],
        batch_size: int = 100,
    ):
        self._unit_of_work = unit_of_work
        self._kafka_producer = kafka_producer
        self._topics = topics
        self._batch_size = batch_size

    def topic_for(self, event: OutboxEvent) -> str:
        """ORDER.PLACED goes to the topic configured for "ORDER", and so on."""
        prefix = event.event_type.split(".", 1)[0]
        return self._topics[prefix]

    async def __call__(self) -> int:
        """
        Process outbox events: fetch pending events, send them to Kafka in
        (partition_key, id) order, mark each as sent once the broker acked it.
        Returns the number of events sent.
        """
        async with self._unit_of_work() as uow:
            events = await uow.outbox.get_pending_events(limit=self._batch_size)

        if not events:
            return 0

        sent = 0
        blocked_partitions: set[str] = set()

        async with self._kafka_producer as kp:
            for event in events:
                if event.partition_key in blocked_partitions:
                    continue

                try:
                    await kp.send_message(
                        message={
                            "event_id": event.id,
                            "event_type": event.event_type,
                            "partition_key": event.partition_key,
                            "payload": event.payload,
                            "created_at": event.created_at.isoformat(),
                        },
                        key=event.partition_key,
                        topic=self.topic_for(event),
                        headers={
                            "event_type": event.event_type,
                            "event_id": str(event.id),
                        },
                    )
                except Exception as e:
                    # Later events of this partition wait for the next round.
                    logger.error(
                        f"Failed to send event {event.id} ({event.event_type}): {e}",
                        exc_info=True,
                    )
                    blocked_partitions.add(event.partition_key)
                    continue

                async with self._unit_of_work() as uow:
                    await uow.outbox.mark_as_sent(event.id)
                    await uow.commit()
                sent += 1

        if sent:
            logger.info(f"Published {sent} outbox event(s)")
        return sent
