"""Secondary projection store: denormalized, TTL-bounded order items."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from redis.asyncio import Redis
from redis.exceptions import RedisError

from orderflow.common.errors import DependencyUnavailable
from orderflow.services.orders.schemas import OrderResponse


@dataclass(frozen=True)
class ProjectionRecord:
    id: str
    user_id: str
    amount: str
    description: str
    status: str
    created_at: str
    ttl: int

    def to_item(self) -> dict[str, str]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "amount": self.amount,
            "description": self.description,
            "status": self.status,
            "createdAt": self.created_at,
            "ttl": str(self.ttl),
        }

    @classmethod
    def from_item(cls, item: dict[str, str]) -> "ProjectionRecord":
        return cls(
            id=item["id"],
            user_id=item["userId"],
            amount=item["amount"],
            description=item["description"],
            status=item["status"],
            created_at=item["createdAt"],
            ttl=int(item["ttl"]),
        )


class ProjectionStore:
    """Writes one hash per order, expiring `ttl_days` after creation.

    No read-after-write guarantee relative to the system of record.
    """

    def __init__(self, redis: Redis, ttl_days: int = 30) -> None:
        self.redis = redis
        self.ttl_days = ttl_days

    @staticmethod
    def key(order_id: str) -> str:
        return f"order-projection:{order_id}"

    def build_record(self, order: OrderResponse) -> ProjectionRecord:
        created_at = order.created_at.astimezone(timezone.utc)
        expires_at = created_at + timedelta(days=self.ttl_days)
        return ProjectionRecord(
            id=order.id,
            user_id=order.user_id,
            amount=str(order.amount),
            description=order.description,
            status=order.status,
            created_at=created_at.isoformat(),
            ttl=int(expires_at.timestamp()),
        )

    async def put(self, record: ProjectionRecord, expires_at: datetime | None = None) -> None:
        expire_epoch = int(expires_at.timestamp()) if expires_at is not None else record.ttl
        key = self.key(record.id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=record.to_item())
                pipe.expireat(key, expire_epoch)
                await pipe.execute()
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise DependencyUnavailable("projection-store", str(exc)) from exc

    async def get(self, order_id: str) -> ProjectionRecord | None:
        try:
            item = await self.redis.hgetall(self.key(order_id))
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise DependencyUnavailable("projection-store", str(exc)) from exc
        if not item:
            return None
        return ProjectionRecord.from_item(item)
