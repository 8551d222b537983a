from unittest.mock import AsyncMock

import pytest

from checkout.core.models import EventTypeEnum
from checkout.infrastructure.kafka_producer import KafkaProducer, encode_headers


class TestKafkaProducer:
    def test_headers_are_encoded_as_bytes(self):
        assert encode_headers(
            {"event_type": EventTypeEnum.ORDER_PLACED, "event_id": "7"}
        ) == [("event_type", b"ORDER.PLACED"), ("event_id", b"7")]
        assert encode_headers(None) is None
        assert encode_headers({}) is None

    @pytest.mark.asyncio
    async def test_send_uses_default_topic_and_passes_headers(self):
        # Given
        producer = KafkaProducer(bootstrap_servers="kafka:9092", topic="orders")
        producer._producer = AsyncMock()

        # When
        await producer.send_message(
            {"event_id": 7}, key="order-1", headers={"event_id": "7"}
        )

        # Then
        producer._producer.send_and_wait.assert_awaited_once_with(
            topic="orders",
            value={"event_id": 7},
            key="order-1",
            headers=[("event_id", b"7")],
        )

    @pytest.mark.asyncio
    async def test_send_requires_start(self):
        producer = KafkaProducer(bootstrap_servers="kafka:9092", topic="orders")

        with pytest.raises(RuntimeError):
            await producer.send_message({"event_id": 1})
