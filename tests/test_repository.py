"""System-of-record constraints and intent bookkeeping."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from orderflow.common.errors import ConstraintViolation, EntityNotFound
from orderflow.services.orders.models import IntentStage, IntentStatus, Order, OrderIntent
from orderflow.services.orders.service import provision_placeholder_user


def _order(**overrides) -> Order:
    values = {
        "id": "00000000-0000-4000-8000-000000000001",
        "user_id": "u1",
        "amount": Decimal("10.00"),
        "description": "widget",
        "status": "pending",
        "created_at": datetime.now(timezone.utc),
    }
    values.update(overrides)
    return Order(**values)


def _intent(order_id: str, **overrides) -> OrderIntent:
    values = {
        "order_id": order_id,
        "fingerprint": f"idempotency:u1:10.00:{order_id[-4:]}",
        "user_id": "u1",
        "amount": Decimal("10.00"),
        "description": "widget",
        "order_created_at": datetime.now(timezone.utc),
        "stage": IntentStage.RESERVED.value,
        "status": IntentStatus.IN_PROGRESS.value,
        "attempts": 1,
    }
    values.update(overrides)
    return OrderIntent(**values)


async def test_placeholder_user_is_created_once(repository):
    assert await provision_placeholder_user(repository, "u1")
    assert not await provision_placeholder_user(repository, "u1")
    assert await repository.user_exists("u1")


async def test_order_for_unknown_user_is_rejected(repository):
    with pytest.raises(ConstraintViolation):
        await repository.insert_order(_order(user_id="ghost"), mark_intent=False)


async def test_boundary_checks_apply_at_the_store(repository):
    await provision_placeholder_user(repository, "u1")

    with pytest.raises(ConstraintViolation):
        await repository.insert_order(_order(amount=Decimal("0")), mark_intent=False)
    with pytest.raises(ConstraintViolation):
        await repository.insert_order(_order(description="x" * 501), mark_intent=False)
    assert await repository.count_orders() == 0


async def test_duplicate_order_id_is_rejected(repository):
    await provision_placeholder_user(repository, "u1")
    await repository.insert_order(_order(), mark_intent=False)

    with pytest.raises(ConstraintViolation):
        await repository.insert_order(_order(), mark_intent=False)
    assert await repository.count_orders() == 1


async def test_insert_advances_intent_in_same_write(repository):
    await provision_placeholder_user(repository, "u1")
    order = _order()
    await repository.save_intent(_intent(order.id))

    await repository.insert_order(order)

    assert (await repository.get_intent(order.id)).stage == IntentStage.PRIMARY.value


async def test_user_with_orders_cannot_be_deleted(repository):
    await provision_placeholder_user(repository, "u1")
    await repository.insert_order(_order(), mark_intent=False)

    with pytest.raises(ConstraintViolation):
        await repository.delete_user("u1")
    assert await repository.user_exists("u1")


async def test_user_without_orders_can_be_deleted(repository):
    await provision_placeholder_user(repository, "u2")

    await repository.delete_user("u2")

    assert not await repository.user_exists("u2")
    with pytest.raises(EntityNotFound):
        await repository.delete_user("u2")


async def test_stalled_intents_selects_failed_and_stale(repository):
    await repository.save_intent(_intent("00000000-0000-4000-8000-00000000000a"))
    await repository.save_intent(_intent("00000000-0000-4000-8000-00000000000b"))
    await repository.save_intent(_intent("00000000-0000-4000-8000-00000000000c"))
    await repository.fail_intent("00000000-0000-4000-8000-00000000000b", "dependency_unavailable: boom")
    await repository.fail_intent("00000000-0000-4000-8000-00000000000c", "constraint_violation", terminal=True)

    recent = await repository.stalled_intents(datetime.now(timezone.utc) - timedelta(hours=1))
    everything = await repository.stalled_intents(datetime.now(timezone.utc) + timedelta(hours=1))

    assert [i.order_id for i in recent] == ["00000000-0000-4000-8000-00000000000b"]
    assert {i.order_id for i in everything} == {
        "00000000-0000-4000-8000-00000000000a",
        "00000000-0000-4000-8000-00000000000b",
    }
    summary = await repository.intent_summary()
    assert summary["in_progress"] == 1 and summary["failed"] == 1 and summary["abandoned"] == 1
