"""Redis idempotency guard keyed by a request fingerprint.

The reservation is taken with `SET NX` before any store mutation. It ends by
TTL expiry, except that a holder whose intent could not be persisted hands it
back with `release`.
"""

import asyncio
import hashlib
from dataclasses import dataclass
from decimal import Decimal

from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from orderflow.common.errors import DependencyUnavailable
from orderflow.common.logging import logger


@dataclass(frozen=True)
class Reservation:
    """Outcome of `reserve`: `hit` means another attempt owns the fingerprint."""

    hit: bool
    order_id: str


def fingerprint(user_id: str, amount: Decimal, description: str) -> str:
    """Deterministic idempotency key for one logical request."""

    digest = hashlib.sha256(description.encode("utf-8")).hexdigest()[:16]
    return f"idempotency:{user_id}:{Decimal(amount).quantize(Decimal('0.01'))}:{digest}"


class IdempotencyGuard:
    """Maps fingerprints to order ids for a short window."""

    def __init__(self, redis: Redis, ttl_seconds: int) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def reserve(self, key: str, order_id: str) -> Reservation:
        try:
            for _ in range(2):
                if await self.redis.set(key, order_id, nx=True, ex=self.ttl_seconds):
                    return Reservation(hit=False, order_id=order_id)
                holder = await self.redis.get(key)
                if holder is not None:
                    return Reservation(hit=True, order_id=holder)
                # Holder expired between SET and GET.
                logger.info("idempotency_reservation_expired_midway key=%s", key)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise DependencyUnavailable("redis", str(exc)) from exc
        raise DependencyUnavailable("redis", f"could not settle reservation for {key}")

    async def confirm(self, key: str, order_id: str) -> None:
        """Point the fingerprint at the finished order for a full window."""

        try:
            await self.redis.set(key, order_id, ex=self.ttl_seconds)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise DependencyUnavailable("redis", str(exc)) from exc

    async def acquire_resume_lock(self, order_id: str, ttl_seconds: int) -> bool:
        """Single-resumer lock for a partially completed creation."""

        try:
            return bool(await self.redis.set(f"order-resume:{order_id}", "1", nx=True, ex=ttl_seconds))
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise DependencyUnavailable("redis", str(exc)) from exc
    async def release(self, key: str, order_id: str) -> bool:
        """Drop the reservation only while `order_id` still holds it."""

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                if await pipe.get(key) != order_id:
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
                return True
        except WatchError:
            return False
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise DependencyUnavailable("redis", str(exc)) from exc
