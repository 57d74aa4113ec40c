"""Kafka event schema + producer helper.

This module fixes the `OrderCreated` message shape and wraps the producer used
by the order event publisher.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal

from aiokafka import AIOKafkaProducer
from aiokafka.structs import RecordMetadata
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from orderflow.common.config import settings


class OrderCreatedEvent(BaseModel):
    """Immutable fact emitted once an order is durable and cached."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    event_type: Literal["OrderCreated"] = "OrderCreated"
    order_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    description: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    trace_id: str = ""
    span_id: str = ""

    def body(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    def attributes(self) -> list[tuple[str, bytes]]:
        """Transport-level attributes, all string-typed."""

        return [
            ("OrderId", self.order_id.encode("utf-8")),
            ("EventType", self.event_type.encode("utf-8")),
            ("TraceId", self.trace_id.encode("utf-8")),
        ]


class KafkaBus:
    """Lazy Kafka producer wrapper used by the order event publisher."""

    def __init__(self, bootstrap_servers: str | None = None, producer=None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer = producer
        self._started = False

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers, acks="all")
        if not self._started:
            await self._producer.start()
            self._started = True
        return self._producer

    async def publish(
        self,
        topic: str,
        value: bytes,
        key: str | None = None,
        headers: list[tuple[str, bytes]] | None = None,
    ) -> RecordMetadata:
        producer = await self.producer()
        return await producer.send_and_wait(
            topic,
            value,
            key=key.encode("utf-8") if key is not None else None,
            headers=headers,
        )

    async def close(self) -> None:
        if self._producer is not None and self._started:
            await self._producer.stop()
            self._started = False
