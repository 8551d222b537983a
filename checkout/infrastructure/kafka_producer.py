import json
from typing import Any

from aiokafka import AIOKafkaProducer


def encode_headers(headers: dict[str, str] | None) -> list[tuple[str, bytes]] | None:
    if not headers:
        return None
    return [(name, str(value).encode("utf-8")) for name, value in headers.items()]


class KafkaProducer:
    """
    Publishes outbox envelopes. Every send waits for acks from all in-sync
    replicas, idempotence keeps broker-side retries from reordering a key.
    """

    def __init__(self, bootstrap_servers: str, topic: str):
        self._bootstrap_servers = bootstrap_servers
        self._default_topic = topic
        self._producer: AIOKafkaProducer | None = None

    async def start(self):
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
            acks="all",
            enable_idempotence=True,
        )
        await self._producer.start()

    async def stop(self):
        if self._producer:
            await self._producer.stop()
            self._producer = None

    async def send_message(
        self,
        message: dict[str, Any],
        key: str | None = None,
        topic: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Send one envelope and wait until the broker acknowledged it"""
        if not self._producer:
            raise RuntimeError("Producer is not started. Call start() first.")

        await self._producer.send_and_wait(
            topic=topic or self._default_topic,
            value=message,
            key=key,
            headers=encode_headers(headers),
        )

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
