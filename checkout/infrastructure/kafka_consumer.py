import asyncio
import json
import logging

from aiokafka import AIOKafkaConsumer, TopicPartition

logger = logging.getLogger(__name__)


class KafkaEventConsumer:
    def __init__(
        self,
        bootstrap_servers: str,
        topics: list[str],
        group_id: str,
        process_message_callback,
        retry_backoff: float = 1.0,
    ):
        self._bootstrap_servers = bootstrap_servers
        self._topics = topics
        self._group_id = group_id
        self._process_message = process_message_callback
        self._retry_backoff = retry_backoff
        self._consumer: AIOKafkaConsumer | None = None

    async def start(self):
        self._consumer = AIOKafkaConsumer(
            *self._topics,
            bootstrap_servers=self._bootstrap_servers,
            group_id=self._group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
            value_deserializer=lambda m: json.loads(m.decode("utf-8")),
        )
        await self._consumer.start()

    async def stop(self):
        if self._consumer:
            await self._consumer.stop()

    async def consume(self):
        if not self._consumer:
            raise RuntimeError("Consumer not started")

        logger.info(f"Started consuming from topics: {self._topics}")

        try:
            async for message in self._consumer:
                event_data = message.value or {}
                message_id = str(
                    event_data.get("event_id")
                    or f"{message.topic}:{message.partition}:{message.offset}"
                )
                try:
                    logger.info(f"Processing message from {message.topic}: {message_id}")
                    await self._process_message(
                        message_id=message_id,
                        event_data=event_data,
                        topic=message.topic,
                    )
                except Exception as e:
                    logger.error(
                        f"Error processing message {message_id}, retrying: {e}",
                        exc_info=True,
                    )
                    # Redeliver the same message, later offsets must not be committed past it.
                    self._consumer.seek(
                        TopicPartition(message.topic, message.partition), message.offset
                    )
                    await asyncio.sleep(self._retry_backoff)
                    continue

                # Offsets are committed only after the handler succeeded,
                # handlers dedupe through the inbox.
                await self._consumer.commit()

        except asyncio.CancelledError:
            logger.info("Consumer cancelled")
            raise
        except Exception as e:
            logger.error(f"Fatal error in consumer: {e}", exc_info=True)
