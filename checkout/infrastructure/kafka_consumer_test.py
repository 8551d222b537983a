import asyncio
from types import SimpleNamespace

import pytest

from checkout.infrastructure.kafka_consumer import KafkaEventConsumer

TOPIC = "product-stock"


class FakeAIOKafkaConsumer:
    """In-memory stand-in for a started AIOKafkaConsumer on a single partition"""

    def __init__(self, offsets: list[int]):
        self._records = [
            SimpleNamespace(
                topic=TOPIC,
                partition=0,
                offset=offset,
                value={"product_id": "p-1", "stock": offset},
            )
            for offset in offsets
        ]
        self._position = 0
        self.seeks: list[tuple[str, int, int]] = []
        self.committed_after: list[int] = []

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._position >= len(self._records):
            raise asyncio.CancelledError
        record = self._records[self._position]
        self._position += 1
        return record

    def seek(self, partition, offset: int):
        self.seeks.append((partition.topic, partition.partition, offset))
        self._position = next(
            i for i, r in enumerate(self._records) if r.offset == offset
        )

    async def commit(self):
        self.committed_after.append(self._records[self._position - 1].offset)


class TestKafkaEventConsumer:
    @pytest.mark.asyncio
    async def test_failed_message_is_redelivered_before_later_offsets_commit(self):
        # Given - the handler fails once on offset 10
        handled: list[int] = []
        failures = {10: 1}

        async def handler(message_id: str, event_data: dict, topic: str):
            offset = int(message_id.rsplit(":", 1)[1])
            handled.append(offset)
            if failures.get(offset):
                failures[offset] -= 1
                raise RuntimeError("database unavailable")

        consumer = KafkaEventConsumer(
            bootstrap_servers="kafka:9092",
            topics=[TOPIC],
            group_id="checkout-test",
            process_message_callback=handler,
            retry_backoff=0,
        )
        fake = FakeAIOKafkaConsumer([10, 11])
        consumer._consumer = fake

        # When
        with pytest.raises(asyncio.CancelledError):
            await consumer.consume()

        # Then - offset 10 is retried and nothing is committed past it while it fails
        assert handled == [10, 10, 11]
        assert fake.seeks == [(TOPIC, 0, 10)]
        assert fake.committed_after == [10, 11]

    @pytest.mark.asyncio
    async def test_consume_requires_start(self):
        # Given
        async def handler(message_id: str, event_data: dict, topic: str):
            pass

        consumer = KafkaEventConsumer(
            bootstrap_servers="kafka:9092",
            topics=[TOPIC],
            group_id="checkout-test",
            process_message_callback=handler,
        )

        # When / Then
        with pytest.raises(RuntimeError):
            await consumer.consume()
