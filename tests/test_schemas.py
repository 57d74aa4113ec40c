"""Request validation boundaries and response projection serialization."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from orderflow.common.errors import ErrorKind, InvalidOrderRequest
from orderflow.services.orders.schemas import CreateOrderRequest, OrderResponse, parse_create_request


def _request(**overrides):
    payload = {"userId": "u1", "amount": "10.00", "description": "widget"}
    payload.update(overrides)
    return CreateOrderRequest.model_validate(payload)


def test_zero_amount_rejected():
    with pytest.raises(ValidationError):
        _request(amount="0")


def test_smallest_amount_accepted():
    assert _request(amount="0.01").amount == Decimal("0.01")


def test_sub_cent_amount_rejected():
    """Amounts the store cannot hold exactly are refused, not rounded."""

    with pytest.raises(ValidationError):
        _request(amount="1.005")


def test_description_length_boundary():
    assert len(_request(description="x" * 500).description) == 500
    with pytest.raises(ValidationError):
        _request(description="x" * 501)


def test_description_counts_code_points():
    assert _request(description="é" * 500).description == "é" * 500


def test_malformed_user_id_rejected():
    with pytest.raises(ValidationError):
        _request(userId="not a valid id!")


def test_amount_normalised_to_cents():
    assert str(_request(amount=10).amount) == "10.00"


def test_parse_reports_taxonomy_error():
    with pytest.raises(InvalidOrderRequest) as excinfo:
        parse_create_request({"userId": "u1", "amount": "-1", "description": ""})

    assert excinfo.value.kind == ErrorKind.VALIDATION
    assert len(excinfo.value.errors) == 2


def test_projection_round_trip_is_exact():
    order = OrderResponse(
        id="3f0c9a4e-0000-4000-8000-000000000001",
        user_id="u1",
        amount=Decimal("12345678.91"),
        description="widget ☃",
        created_at=datetime(2026, 10, 19, 8, 30, 15, 123456, tzinfo=timezone.utc),
        status="pending",
    )

    restored = OrderResponse.from_json(order.to_json())

    assert restored == order
    assert str(restored.amount) == "12345678.91"


def test_projection_uses_camel_case_keys():
    order = OrderResponse(
        id="o1",
        user_id="u1",
        amount=Decimal("10.00"),
        description="widget",
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        status="pending",
    )

    dumped = order.model_dump(mode="json", by_alias=True)

    assert set(dumped) == {"id", "userId", "amount", "description", "createdAt", "status"}
    assert dumped["amount"] == "10.00"
