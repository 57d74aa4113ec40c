"""`OrderCreated` publisher on top of the Kafka bus."""

import asyncio

from aiokafka.errors import KafkaError

from orderflow.common.errors import DependencyUnavailable
from orderflow.common.events import KafkaBus, OrderCreatedEvent
from orderflow.common.logging import logger


class OrderEventPublisher:
    """At-least-once publisher; consumers deduplicate on `orderId`."""

    def __init__(self, bus: KafkaBus, topic: str) -> None:
        self.bus = bus
        self.topic = topic

    async def publish(self, event: OrderCreatedEvent) -> str:
        """Send one event keyed by order id and return its message id."""

        try:
            meta = await self.bus.publish(
                self.topic,
                event.body(),
                key=event.order_id,
                headers=event.attributes(),
            )
        except (KafkaError, OSError, asyncio.TimeoutError) as exc:
            raise DependencyUnavailable("kafka", str(exc)) from exc
        message_id = f"{meta.topic}:{meta.partition}:{meta.offset}"
        logger.info("order_event_published topic=%s message_id=%s", self.topic, message_id)
        return message_id
