"""System-of-record access for users, orders, and creation intents."""

import asyncio
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError

from orderflow.common.errors import ConstraintViolation, DependencyUnavailable, EntityNotFound
from orderflow.common.logging import logger
from orderflow.services.orders.models import (
    DESCRIPTION_MAX_LENGTH,
    IntentStage,
    IntentStatus,
    Order,
    OrderIntent,
    User,
)


_UNAVAILABLE = (OperationalError, InterfaceError, OSError, asyncio.TimeoutError)


class OrderRepository:
    """Owns every read and write against the relational store."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    async def user_exists(self, user_id: str) -> bool:
        try:
            async with self.session_factory() as db:
                return await db.get(User, user_id) is not None
        except _UNAVAILABLE as exc:
            raise DependencyUnavailable("postgres", str(exc)) from exc

    async def create_user_if_missing(self, user_id: str, name: str, email: str) -> bool:
        """Insert the user unless present; return True when a row was created.

        A concurrent insert of the same id surfaces as an integrity error and
        is treated as "already exists".
        """

        try:
            async with self.session_factory() as db:
                if await db.get(User, user_id) is not None:
                    return False
                db.add(User(id=user_id, name=name, email=email))
                try:
                    await db.commit()
                except IntegrityError as exc:
                    await db.rollback()
                    if await db.get(User, user_id) is not None:
                        return False
                    raise ConstraintViolation(f"cannot create user {user_id}: {exc.orig}") from exc
                return True
        except _UNAVAILABLE as exc:
            raise DependencyUnavailable("postgres", str(exc)) from exc

    async def delete_user(self, user_id: str) -> None:
        """Delete a user; rejected while any order references it."""

        try:
            async with self.session_factory() as db:
                user = await db.get(User, user_id)
                if user is None:
                    raise EntityNotFound(f"user {user_id} not found")
                owned = (
                    await db.execute(select(func.count()).select_from(Order).where(Order.user_id == user_id))
                ).scalar_one()
                if owned:
                    raise ConstraintViolation(f"user {user_id} still owns {owned} order(s)")
                await db.execute(delete(User).where(User.id == user_id))
                try:
                    await db.commit()
                except IntegrityError as exc:
                    await db.rollback()
                    raise ConstraintViolation(f"user {user_id} is still referenced") from exc
        except _UNAVAILABLE as exc:
            raise DependencyUnavailable("postgres", str(exc)) from exc

    async def insert_order(self, order: Order, mark_intent: bool = True) -> Order:
        """Insert one order and, in the same transaction, advance its intent."""

        if order.amount is None or order.amount <= 0:
            raise ConstraintViolation("amount must be greater than zero")
        if not order.description or len(order.description) > DESCRIPTION_MAX_LENGTH:
            raise ConstraintViolation(f"description must be 1-{DESCRIPTION_MAX_LENGTH} characters")
        try:
            async with self.session_factory() as db:
                if await db.get(User, order.user_id) is None:
                    raise ConstraintViolation(f"user {order.user_id} does not exist")
                db.add(order)
                if mark_intent:
                    await db.execute(
                        update(OrderIntent)
                        .where(OrderIntent.order_id == order.id)
                        .values(stage=IntentStage.PRIMARY.value, updated_at=_now())
                    )
                try:
                    await db.commit()
                except IntegrityError as exc:
                    await db.rollback()
                    raise ConstraintViolation(f"order {order.id} rejected: {exc.orig}") from exc
                return order
        except _UNAVAILABLE as exc:
            raise DependencyUnavailable("postgres", str(exc)) from exc

    async def get_order(self, order_id: str) -> Order | None:
        try:
            async with self.session_factory() as db:
                return await db.get(Order, order_id)
        except _UNAVAILABLE as exc:
            raise DependencyUnavailable("postgres", str(exc)) from exc

    async def count_orders(self, user_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(Order)
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        try:
            async with self.session_factory() as db:
                return (await db.execute(stmt)).scalar_one()
        except _UNAVAILABLE as exc:
            raise DependencyUnavailable("postgres", str(exc)) from exc

    async def save_intent(self, intent: OrderIntent) -> OrderIntent:
        try:
            async with self.session_factory() as db:
                db.add(intent)
                try:
                    await db.commit()
                except IntegrityError as exc:
                    await db.rollback()
                    raise ConstraintViolation(f"intent {intent.order_id} already recorded") from exc
                return intent
        except _UNAVAILABLE as exc:
            raise DependencyUnavailable("postgres", str(exc)) from exc

    async def get_intent(self, order_id: str) -> OrderIntent | None:
        try:
            async with self.session_factory() as db:
                return await db.get(OrderIntent, order_id)
        except _UNAVAILABLE as exc:
            raise DependencyUnavailable("postgres", str(exc)) from exc

    async def advance_intent(self, order_id: str, stage: IntentStage, completed: bool = False) -> None:
        values = {"stage": stage.value, "updated_at": _now(), "last_error": None}
        values["status"] = IntentStatus.COMPLETED.value if completed else IntentStatus.IN_PROGRESS.value
        await self._update_intent(order_id, values)

    async def fail_intent(self, order_id: str, error: str, terminal: bool = False) -> None:
        """Record a stage failure; terminal failures are never resumed."""

        status = IntentStatus.ABANDONED if terminal else IntentStatus.FAILED
        await self._update_intent(
            order_id,
            {"status": status.value, "last_error": error[:2000], "updated_at": _now()},
        )

    async def begin_resume(self, order_id: str) -> None:
        """Flag an intent as being worked on again and count the attempt."""

        await self._update_intent(
            order_id,
            {
                "status": IntentStatus.IN_PROGRESS.value,
                "attempts": OrderIntent.attempts + 1,
                "updated_at": _now(),
            },
        )

    async def stalled_intents(self, older_than: datetime, limit: int = 100) -> list[OrderIntent]:
        """Failed intents, plus in-progress ones not touched since `older_than`."""

        stmt = (
            select(OrderIntent)
            .where(
                (OrderIntent.status == IntentStatus.FAILED.value)
                | (
                    (OrderIntent.status == IntentStatus.IN_PROGRESS.value)
                    & (OrderIntent.updated_at < older_than)
                )
            )
            .order_by(OrderIntent.created_at)
            .limit(limit)
        )
        try:
            async with self.session_factory() as db:
                return list((await db.execute(stmt)).scalars().all())
        except _UNAVAILABLE as exc:
            raise DependencyUnavailable("postgres", str(exc)) from exc

    async def intent_summary(self) -> dict[str, int]:
        """Count intents per status for the reconciliation report."""

        stmt = select(OrderIntent.status, func.count()).group_by(OrderIntent.status)
        try:
            async with self.session_factory() as db:
                rows = (await db.execute(stmt)).all()
        except _UNAVAILABLE as exc:
            raise DependencyUnavailable("postgres", str(exc)) from exc
        summary = {status.value: 0 for status in IntentStatus}
        summary.update({row[0]: int(row[1]) for row in rows})
        return summary

    async def _update_intent(self, order_id: str, values: dict) -> None:
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    update(OrderIntent).where(OrderIntent.order_id == order_id).values(**values)
                )
                await db.commit()
        except _UNAVAILABLE as exc:
            raise DependencyUnavailable("postgres", str(exc)) from exc
        if result.rowcount != 1:
            logger.warning("intent_update_missed order_id=%s values=%s", order_id, sorted(values))


def _now() -> datetime:
    return datetime.now(timezone.utc)
