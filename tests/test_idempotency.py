"""Idempotency guard reservation semantics."""

from decimal import Decimal

import pytest

from orderflow.common.errors import DependencyUnavailable
from orderflow.services.orders.idempotency import IdempotencyGuard, fingerprint


def test_fingerprint_is_deterministic_and_amount_normalised():
    assert fingerprint("u1", Decimal("10"), "widget") == fingerprint("u1", Decimal("10.00"), "widget")
    assert fingerprint("u1", Decimal("10"), "widget") != fingerprint("u1", Decimal("10"), "gadget")
    assert fingerprint("u1", Decimal("10"), "widget").startswith("idempotency:u1:10.00:")


async def test_first_reserve_misses_and_second_hits(redis):
    guard = IdempotencyGuard(redis, ttl_seconds=300)
    key = fingerprint("u1", Decimal("10"), "widget")

    first = await guard.reserve(key, "order-a")
    second = await guard.reserve(key, "order-b")

    assert not first.hit and first.order_id == "order-a"
    assert second.hit and second.order_id == "order-a"
    assert 0 < await redis.ttl(key) <= 300


async def test_confirm_refreshes_window(redis):
    guard = IdempotencyGuard(redis, ttl_seconds=300)
    await redis.set("idempotency:k", "order-a", ex=5)

    await guard.confirm("idempotency:k", "order-a")

    assert await redis.get("idempotency:k") == "order-a"
    assert await redis.ttl("idempotency:k") > 5


async def test_resume_lock_is_exclusive(redis):
    guard = IdempotencyGuard(redis, ttl_seconds=300)

    assert await guard.acquire_resume_lock("order-a", 30)
    assert not await guard.acquire_resume_lock("order-a", 30)


async def test_release_only_drops_own_reservation(redis):
    guard = IdempotencyGuard(redis, ttl_seconds=300)
    await guard.reserve("idempotency:k", "order-a")

    assert not await guard.release("idempotency:k", "order-b")
    assert await redis.get("idempotency:k") == "order-a"
    assert await guard.release("idempotency:k", "order-a")
    assert await redis.get("idempotency:k") is None


async def test_unreachable_redis_raises_dependency_error(broken_redis):
    guard = IdempotencyGuard(broken_redis, ttl_seconds=300)

    with pytest.raises(DependencyUnavailable) as excinfo:
        await guard.reserve("idempotency:k", "order-a")

    assert excinfo.value.dependency == "redis"
    assert excinfo.value.retryable
