"""Read-through cache of materialized order responses."""

import asyncio

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from orderflow.common.errors import DependencyUnavailable
from orderflow.common.logging import logger
from orderflow.common.metrics import OrderMetrics
from orderflow.services.orders.repository import OrderRepository
from orderflow.services.orders.schemas import OrderResponse


class OrderCache:
    """`order:{id}` entries refilled from the system of record on miss."""

    def __init__(self, redis: Redis, repository: OrderRepository, ttl_seconds: int, metrics: OrderMetrics) -> None:
        self.redis = redis
        self.repository = repository
        self.ttl_seconds = ttl_seconds
        self.metrics = metrics

    @staticmethod
    def key(order_id: str) -> str:
        return f"order:{order_id}"

    async def get_cached(self, order_id: str) -> OrderResponse | None:
        """Cache-only lookup; an unreadable payload counts as a miss."""

        try:
            raw = await self.redis.get(self.key(order_id))
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise DependencyUnavailable("redis", str(exc)) from exc
        if raw is None:
            self.metrics.cache_miss("order_lookup")
            return None
        try:
            order = OrderResponse.from_json(raw)
        except ValidationError:
            logger.warning("order_cache_payload_unreadable order_id=%s", order_id)
            self.metrics.cache_miss("order_lookup")
            return None
        self.metrics.cache_hit("order_lookup")
        return order

    async def get(self, order_id: str) -> OrderResponse | None:
        cached = await self.get_cached(order_id)
        if cached is not None:
            return cached
        order = await self.repository.get_order(order_id)
        if order is None:
            return None
        response = OrderResponse.from_order(order)
        await self.put(response)
        return response

    async def put(self, order: OrderResponse) -> None:
        try:
            await self.redis.set(self.key(order.id), order.to_json(), ex=self.ttl_seconds)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise DependencyUnavailable("redis", str(exc)) from exc
