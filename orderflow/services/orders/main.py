"""HTTP surface for order creation, lookup, reconciliation and probes."""

import asyncio
from contextlib import asynccontextmanager, suppress
from uuid import uuid4

from fastapi import Body, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse, Response
from redis.asyncio import Redis
from sqlalchemy import text

from orderflow.common.config import CommonSettings, settings
from orderflow.common.db import SessionLocal, create_tables, engine
from orderflow.common.errors import ErrorKind, OrderError
from orderflow.common.events import KafkaBus
from orderflow.common.logging import configure_logging, logger, trace_id_ctx
from orderflow.common.metrics import OrderMetrics, metrics_response
from orderflow.common.startup import log_startup_config
from orderflow.common.tracing import instrument_app, setup_tracing
from orderflow.services.orders.cache import OrderCache
from orderflow.services.orders.idempotency import IdempotencyGuard
from orderflow.services.orders.projection import ProjectionStore
from orderflow.services.orders.publisher import OrderEventPublisher
from orderflow.services.orders.repository import OrderRepository
from orderflow.services.orders.schemas import OrderFailure
from orderflow.services.orders.service import OrderService


STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONSTRAINT_VIOLATION: 422,
    ErrorKind.CONFLICT: 409,
    ErrorKind.DEPENDENCY_UNAVAILABLE: 503,
}


def build_service(
    config: CommonSettings,
    session_factory,
    redis: Redis,
    projection_redis: Redis,
    bus: KafkaBus,
    metrics: OrderMetrics,
) -> OrderService:
    """Wire the four stores and the publisher into one orchestrator."""

    repository = OrderRepository(session_factory)
    return OrderService(
        repository=repository,
        guard=IdempotencyGuard(redis, config.idempotency_ttl_seconds),
        projections=ProjectionStore(projection_redis, config.projection_ttl_days),
        cache=OrderCache(redis, repository, config.order_cache_ttl_seconds, metrics),
        publisher=OrderEventPublisher(bus, config.orders_topic),
        metrics=metrics,
        auto_provision_users=config.auto_provision_users,
        resume_lock_ttl_seconds=config.resume_lock_ttl_seconds,
        stale_after_seconds=config.reconcile_stale_after_seconds,
        idempotency_ttl_seconds=config.idempotency_ttl_seconds,
    )


configure_logging()
setup_tracing(settings)
log_startup_config(
    settings,
    ["postgres_dsn", "redis_url", "projection_redis_url", "kafka_bootstrap_servers", "orders_topic"],
)
rdb = Redis.from_url(settings.redis_url, decode_responses=True)
projection_rdb = Redis.from_url(settings.projection_redis_url, decode_responses=True)
kafka = KafkaBus(settings.kafka_bootstrap_servers)
metrics = OrderMetrics()
service = build_service(settings, SessionLocal, rdb, projection_rdb, kafka, metrics)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Bootstrap tables, run the reconciler, and release clients on shutdown."""

    await create_tables()
    reconciler_task = asyncio.create_task(
        service.reconciler(settings.reconcile_interval_seconds, settings.reconcile_batch_size)
    )
    yield
    reconciler_task.cancel()
    with suppress(asyncio.CancelledError):
        await reconciler_task
    await kafka.close()
    await rdb.aclose()
    await projection_rdb.aclose()
    await engine.dispose()
    metrics.close()


app = FastAPI(title="Orderflow Orders", lifespan=lifespan)
instrument_app(app)


def _error_response(failure: OrderFailure) -> JSONResponse:
    headers = {"Retry-After": "1"} if failure.retryable else None
    body = {"error": failure.kind.value, "message": failure.message, "stage": failure.stage}
    if failure.details:
        body["details"] = list(failure.details)
    return JSONResponse(status_code=STATUS_BY_KIND[failure.kind], content=body, headers=headers)


@app.post("/orders")
async def create_order(payload: dict = Body(...), x_trace_id: str | None = Header(default=None)):
    """Create an order; an identical request inside the window returns the first order."""

    trace_id = x_trace_id or uuid4().hex
    trace_id_ctx.set(trace_id)
    result = await service.create_order(payload)
    if not result.ok:
        return _error_response(result.error)
    body = result.order.model_dump(mode="json", by_alias=True)
    if result.idempotent:
        return JSONResponse(status_code=200, content=body)
    return JSONResponse(status_code=201, content=body, headers={"Location": f"/orders/{result.order.id}"})


@app.get("/orders/{order_id}")
async def get_order(order_id: str):
    """Fetch one order through the read-through cache."""

    try:
        order = await service.get_order(order_id)
    except OrderError as exc:
        return _error_response(OrderFailure.from_error(exc))
    if order is None:
        raise HTTPException(status_code=404, detail="order not found")
    return order.model_dump(mode="json", by_alias=True)


@app.delete("/users/{user_id}", status_code=204)
async def delete_user(user_id: str):
    """Delete a user that owns no orders."""

    try:
        await service.delete_user(user_id)
    except OrderError as exc:
        failure = OrderFailure.from_error(exc)
        if failure.kind == ErrorKind.CONSTRAINT_VIOLATION:
            return JSONResponse(status_code=409, content={"error": failure.kind.value, "message": failure.message})
        return _error_response(failure)
    return Response(status_code=204)


@app.get("/reconciliation")
async def reconciliation():
    """Summarize creation intents by status."""

    try:
        summary = await service.repository.intent_summary()
    except OrderError as exc:
        return _error_response(OrderFailure.from_error(exc))
    return {"intents": summary, "needs_attention": summary["failed"] + summary["abandoned"]}


async def _probe_postgres() -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def _probe_kafka() -> None:
    await kafka.producer()


@app.get("/health")
async def health():
    """Dependency health probe."""

    probes = {
        "postgres": _probe_postgres,
        "redis": rdb.ping,
        "projection_store": projection_rdb.ping,
        "kafka": _probe_kafka,
    }
    checks = {}
    for name, probe in probes.items():
        try:
            await asyncio.wait_for(probe(), timeout=2.0)
            checks[name] = "ok"
        except Exception as exc:
            logger.warning("health_check_failed dependency=%s error=%s", name, exc)
            checks[name] = f"error: {exc.__class__.__name__}"
    healthy = all(value == "ok" for value in checks.values())
    return JSONResponse(status_code=200 if healthy else 503, content={"ok": healthy, "checks": checks})


@app.get("/metrics")
def metrics_endpoint():
    """Prometheus scrape endpoint."""

    return metrics_response(metrics)
