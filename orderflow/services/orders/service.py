"""Order creation workflow.

Sequences the idempotency guard, the system of record, the secondary
projection store, the response cache and the event publisher. Every creation
is backed by an intent row so a retry or the reconciler resumes a partially
completed pipeline from its last finished stage instead of creating a second
order.
"""

import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from time import perf_counter
from uuid import uuid4

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from orderflow.common.errors import (
    ConstraintViolation,
    CreationInProgress,
    EntityNotFound,
    ErrorKind,
    InvalidOrderRequest,
    OrderError,
)
from orderflow.common.events import OrderCreatedEvent
from orderflow.common.logging import bound_order, logger, trace_id_ctx
from orderflow.common.metrics import OrderMetrics
from orderflow.common.tracing import current_trace_ids
from orderflow.services.orders.cache import OrderCache
from orderflow.services.orders.idempotency import IdempotencyGuard, fingerprint
from orderflow.services.orders.models import (
    STAGE_ORDER,
    IntentStage,
    IntentStatus,
    Order,
    OrderIntent,
    OrderStatus,
)
from orderflow.services.orders.projection import ProjectionStore
from orderflow.services.orders.publisher import OrderEventPublisher
from orderflow.services.orders.repository import OrderRepository
from orderflow.services.orders.schemas import (
    CreateOrderResult,
    OrderFailure,
    OrderResponse,
    parse_create_request,
)


tracer = trace.get_tracer("orderflow.orders")


@contextmanager
def _stage(name: str):
    """Run one pipeline stage in its own span and tag failures with it."""

    with tracer.start_as_current_span(name):
        try:
            yield
        except OrderError as exc:
            if getattr(exc, "stage", None) is None:
                exc.stage = name
            raise


def _stage_index(stage: str) -> int:
    return STAGE_ORDER.index(IntentStage(stage))


async def provision_placeholder_user(repository: OrderRepository, user_id: str) -> bool:
    """Create a minimal user row for an unrecognized id.

    Returns True when a row was inserted, False when the user already existed.
    """

    created = await repository.create_user_if_missing(
        user_id,
        name=f"User {user_id}",
        email=f"user{user_id}@example.com",
    )
    if created:
        logger.info("placeholder_user_created user_id=%s", user_id)
    return created


class OrderService:
    """Owns the idempotent, multi-store order creation pipeline."""

    def __init__(
        self,
        repository: OrderRepository,
        guard: IdempotencyGuard,
        projections: ProjectionStore,
        cache: OrderCache,
        publisher: OrderEventPublisher,
        metrics: OrderMetrics,
        auto_provision_users: bool = True,
        resume_lock_ttl_seconds: int = 30,
        stale_after_seconds: int = 60,
        idempotency_ttl_seconds: int = 300,
    ) -> None:
        self.repository = repository
        self.guard = guard
        self.projections = projections
        self.cache = cache
        self.publisher = publisher
        self.metrics = metrics
        self.auto_provision_users = auto_provision_users
        self.resume_lock_ttl_seconds = resume_lock_ttl_seconds
        self.stale_after_seconds = stale_after_seconds
        self.idempotency_ttl_seconds = idempotency_ttl_seconds

    async def create_order(self, payload, trace_id: str | None = None) -> CreateOrderResult:
        """Create one order, or return the order an identical request created."""

        if trace_id:
            trace_id_ctx.set(trace_id)
        try:
            request = parse_create_request(payload)
        except InvalidOrderRequest as exc:
            logger.warning("order_request_rejected errors=%s", exc.errors)
            return CreateOrderResult(error=OrderFailure.from_error(exc, "Validate"))

        started = perf_counter()
        order_id = str(uuid4())
        key = fingerprint(request.user_id, request.amount, request.description)
        with tracer.start_as_current_span("CreateOrder") as span:
            span.set_attribute("order.user_id", request.user_id)
            span.set_attribute("order.amount", str(request.amount))
            try:
                with _stage("CheckIdempotency"):
                    reservation = await self.guard.reserve(key, order_id)
                    if reservation.hit:
                        self.metrics.cache_hit("idempotency")
                        result = await self._resolve_duplicate(reservation.order_id)
                if reservation.hit:
                    span.set_attribute("order.idempotent", True)
                    self.metrics.orders_created_total.labels(status="duplicate").inc()
                    return result
                self.metrics.cache_miss("idempotency")

                with bound_order(order_id):
                    with _stage("CheckIdempotency"):
                        intent = await self._open_intent(
                            OrderIntent(
                                order_id=order_id,
                                fingerprint=key,
                                user_id=request.user_id,
                                amount=request.amount,
                                description=request.description,
                                order_created_at=datetime.now(timezone.utc),
                                stage=IntentStage.RESERVED.value,
                                status=IntentStatus.IN_PROGRESS.value,
                                attempts=1,
                            )
                        )
                    response = await self._advance(intent)
            except OrderError as exc:
                return self._failed(exc)
            finally:
                self.metrics.creation_seconds.observe(max(0.0, perf_counter() - started))

            span.set_attribute("order.id", response.id)
            self.metrics.orders_created_total.labels(status="success").inc()
            self.metrics.order_amount.labels(currency="USD").observe(float(response.amount))
            logger.info("order_created order_id=%s user_id=%s", response.id, response.user_id)
            return CreateOrderResult(order=response)

    async def get_order(self, order_id: str) -> OrderResponse | None:
        """Fetch by id through the read-through cache."""

        return await self.cache.get(order_id)

    async def delete_user(self, user_id: str) -> None:
        await self.repository.delete_user(user_id)

    async def _ensure_user(self, user_id: str) -> None:
        if await self.repository.user_exists(user_id):
            return
        if not self.auto_provision_users:
            raise EntityNotFound(f"user {user_id} not found")
        await provision_placeholder_user(self.repository, user_id)

    async def _open_intent(self, intent: OrderIntent) -> OrderIntent:
        """Persist the intent behind a fresh reservation.

        If the intent cannot be written, nothing else can ever resume the
        reservation, so it is handed back for the next identical request.
        """

        try:
            return await self.repository.save_intent(intent)
        except OrderError:
            try:
                await self.guard.release(intent.fingerprint, intent.order_id)
            except OrderError as release_exc:
                logger.warning(
                    "idempotency_reservation_not_released key=%s error=%s",
                    intent.fingerprint,
                    release_exc,
                )
            raise

    async def _advance(self, intent: OrderIntent) -> OrderResponse:
        """Run every stage after the intent's last completed one."""

        done = _stage_index(intent.stage)
        try:
            if done < _stage_index(IntentStage.PRIMARY):
                with _stage("ValidateUser"):
                    await self._ensure_user(intent.user_id)
                response = OrderResponse(
                    id=intent.order_id,
                    user_id=intent.user_id,
                    amount=intent.amount,
                    description=intent.description,
                    created_at=intent.order_created_at,
                    status=OrderStatus.PENDING.value,
                )
                with _stage("PersistPrimary"):
                    await self.repository.insert_order(
                        Order(
                            id=response.id,
                            user_id=response.user_id,
                            amount=response.amount,
                            description=response.description,
                            status=response.status,
                            created_at=response.created_at,
                        )
                    )
            else:
                order = await self.repository.get_order(intent.order_id)
                if order is None:
                    raise EntityNotFound(f"order {intent.order_id} missing for intent at stage {intent.stage}")
                response = OrderResponse.from_order(order)

            if done < _stage_index(IntentStage.SECONDARY):
                with _stage("PersistSecondary"):
                    record = self.projections.build_record(response)
                    await self.projections.put(record)
                    await self.repository.advance_intent(intent.order_id, IntentStage.SECONDARY)

            if done < _stage_index(IntentStage.CACHED):
                with _stage("UpdateCache"):
                    await asyncio.gather(
                        self.cache.put(response),
                        self.guard.confirm(intent.fingerprint, intent.order_id),
                    )
                    await self.repository.advance_intent(intent.order_id, IntentStage.CACHED)

            if done < _stage_index(IntentStage.PUBLISHED):
                with _stage("PublishEvent"):
                    trace_id, span_id = current_trace_ids()
                    await self.publisher.publish(
                        OrderCreatedEvent(
                            order_id=response.id,
                            user_id=response.user_id,
                            amount=response.amount,
                            description=response.description,
                            trace_id=trace_id,
                            span_id=span_id,
                        )
                    )
                    await self.repository.advance_intent(
                        intent.order_id, IntentStage.PUBLISHED, completed=True
                    )
        except OrderError as exc:
            await self._record_intent_failure(intent.order_id, exc)
            raise
        return response

    async def _record_intent_failure(self, order_id: str, exc: OrderError) -> None:
        # An unknown user may still register within the window.
        terminal = not exc.retryable and exc.kind != ErrorKind.NOT_FOUND
        try:
            await self.repository.fail_intent(order_id, f"{exc.kind.value}: {exc.message}", terminal=terminal)
        except OrderError as mark_exc:
            # The reconciler picks the intent up once it goes stale.
            logger.warning("intent_failure_not_recorded order_id=%s error=%s", order_id, mark_exc)

    async def _resolve_duplicate(self, order_id: str) -> CreateOrderResult:
        """Turn an idempotency hit into the original order's response.

        An unfinished intent is settled first: a cached response can exist
        while the event is still unpublished.
        """

        intent = await self.repository.get_intent(order_id)
        if intent is not None and intent.status != IntentStatus.COMPLETED.value:
            if intent.status == IntentStatus.ABANDONED.value:
                raise ConstraintViolation(intent.last_error or f"order {order_id} creation was abandoned")
            if intent.status == IntentStatus.FAILED.value or self._is_stale(intent):
                response = await self._resume(intent, trigger="retry")
                return CreateOrderResult(order=response, idempotent=True, resumed=True)
            if _stage_index(intent.stage) < _stage_index(IntentStage.CACHED):
                raise CreationInProgress(order_id)

        cached = await self.cache.get_cached(order_id)
        if cached is not None:
            logger.info("order_returned_idempotent order_id=%s source=cache", order_id)
            return CreateOrderResult(order=cached, idempotent=True)

        order = await self.repository.get_order(order_id)
        if order is None:
            raise CreationInProgress(order_id)
        response = OrderResponse.from_order(order)
        await self.cache.put(response)
        logger.info("order_returned_idempotent order_id=%s source=database", order_id)
        return CreateOrderResult(order=response, idempotent=True)

    def _is_stale(self, intent: OrderIntent) -> bool:
        return _age_seconds(intent.updated_at or intent.created_at) > self.stale_after_seconds

    def _window_lapsed(self, intent: OrderIntent) -> bool:
        """True once no identical request can reach an unpersisted intent."""

        return (
            intent.stage == IntentStage.RESERVED.value
            and _age_seconds(intent.created_at) > self.idempotency_ttl_seconds
        )

    async def _resume(self, intent: OrderIntent, trigger: str) -> OrderResponse:
        """Continue a partially completed creation under a single-resumer lock."""

        if not await self.guard.acquire_resume_lock(intent.order_id, self.resume_lock_ttl_seconds):
            raise CreationInProgress(intent.order_id, "order creation is being resumed elsewhere")
        with bound_order(intent.order_id):
            logger.info(
                "order_intent_resumed order_id=%s stage=%s trigger=%s",
                intent.order_id,
                intent.stage,
                trigger,
            )
            self.metrics.intents_resumed_total.labels(trigger=trigger).inc()
            await self.repository.begin_resume(intent.order_id)
            return await self._advance(intent)

    def _failed(self, exc: OrderError) -> CreateOrderResult:
        stage = getattr(exc, "stage", None)
        trace.get_current_span().set_status(Status(StatusCode.ERROR, exc.message))
        self.metrics.orders_created_total.labels(status="error").inc()
        self.metrics.stage_failures_total.labels(stage=stage or "unknown", kind=exc.kind.value).inc()
        if exc.kind == ErrorKind.CONFLICT:
            logger.info("order_creation_in_progress stage=%s error=%s", stage, exc.message)
        else:
            logger.error("order_creation_failed stage=%s kind=%s error=%s", stage, exc.kind.value, exc.message)
        return CreateOrderResult(error=OrderFailure.from_error(exc, stage))

    async def reconcile_once(self, limit: int = 100) -> dict[str, int]:
        """Resume failed or stale intents; return per-outcome counts.

        Intents that never reached the system of record and whose
        idempotency window has lapsed are abandoned instead of resumed.
        """

        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.stale_after_seconds)
        intents = await self.repository.stalled_intents(cutoff, limit=limit)
        counts = {"scanned": len(intents), "resumed": 0, "skipped": 0, "failed": 0, "abandoned": 0}
        for intent in intents:
            if self._window_lapsed(intent):
                await self.repository.fail_intent(
                    intent.order_id,
                    "idempotency window lapsed before the order was persisted",
                    terminal=True,
                )
                counts["abandoned"] += 1
                logger.info("order_intent_abandoned order_id=%s", intent.order_id)
                continue
            try:
                await self._resume(intent, trigger="reconciler")
                counts["resumed"] += 1
            except CreationInProgress:
                counts["skipped"] += 1
            except OrderError as exc:
                counts["failed"] += 1
                logger.warning(
                    "order_intent_resume_failed order_id=%s stage=%s error=%s",
                    intent.order_id,
                    getattr(exc, "stage", None),
                    exc.message,
                )
        return counts

    async def reconciler(self, interval_seconds: float, batch_size: int = 100) -> None:
        """Continuously resume partially completed creations."""

        while True:
            try:
                counts = await self.reconcile_once(limit=batch_size)
                if counts["scanned"]:
                    logger.info("reconcile_pass counts=%s", counts)
            except asyncio.CancelledError:
                raise
            except OrderError as exc:
                logger.warning("reconcile_pass_failed error=%s", exc.message)
            except Exception as exc:
                logger.error("reconcile_loop_error error=%s", exc)
            await asyncio.sleep(interval_seconds)


def _age_seconds(moment: datetime | None) -> float:
    if moment is None:
        return 0.0
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - moment).total_seconds()
