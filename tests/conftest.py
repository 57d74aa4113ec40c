"""Shared fixtures: SQLite system of record, fake Redis servers, recording producer."""

import os
from types import SimpleNamespace

import fakeredis
import fakeredis.aioredis
import pytest
from aiokafka.errors import KafkaConnectionError
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from orderflow.common.db import create_tables
from orderflow.common.events import KafkaBus
from orderflow.common.metrics import OrderMetrics
from orderflow.services.orders.cache import OrderCache
from orderflow.services.orders.idempotency import IdempotencyGuard
from orderflow.services.orders.projection import ProjectionStore
from orderflow.services.orders.publisher import OrderEventPublisher
from orderflow.services.orders.repository import OrderRepository
from orderflow.services.orders.service import OrderService


# No OTLP collector runs during tests.
os.environ.setdefault("OTEL_SDK_DISABLED", "true")


class RecordingProducer:
    """Stands in for `AIOKafkaProducer`, keeping every sent record."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail = False
        self.started = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def send_and_wait(self, topic, value, key=None, headers=None):
        if self.fail:
            raise KafkaConnectionError("broker unreachable")
        self.sent.append({"topic": topic, "value": value, "key": key, "headers": dict(headers or [])})
        return SimpleNamespace(topic=topic, partition=0, offset=len(self.sent) - 1)


class BrokenRedis:
    """Redis client whose every call fails like an unreachable server."""

    def __getattr__(self, name):
        async def unavailable(*args, **kwargs):
            raise RedisConnectionError("Error 111 connecting to redis:6379. Connection refused.")

        return unavailable


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def repository(session_factory):
    return OrderRepository(session_factory)


@pytest.fixture
async def redis():
    client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
async def projection_redis():
    client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def broken_redis():
    return BrokenRedis()


@pytest.fixture
def metrics():
    return OrderMetrics()


@pytest.fixture
def producer():
    return RecordingProducer()


@pytest.fixture
def publisher(producer):
    return OrderEventPublisher(KafkaBus("kafka:9092", producer=producer), "orders.created")


@pytest.fixture
def service(repository, redis, projection_redis, publisher, metrics):
    return OrderService(
        repository=repository,
        guard=IdempotencyGuard(redis, ttl_seconds=300),
        projections=ProjectionStore(projection_redis, ttl_days=30),
        cache=OrderCache(redis, repository, ttl_seconds=1800, metrics=metrics),
        publisher=publisher,
        metrics=metrics,
        auto_provision_users=True,
        resume_lock_ttl_seconds=30,
        stale_after_seconds=60,
        idempotency_ttl_seconds=300,
    )
