"""API request/response schemas and the orchestrator's result type."""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from orderflow.common.errors import ErrorKind, InvalidOrderRequest, OrderError
from orderflow.services.orders.models import DESCRIPTION_MAX_LENGTH, Order


USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
MAX_AMOUNT = Decimal("99999999.99")
CENT = Decimal("0.01")


class CreateOrderRequest(BaseModel):
    """Order creation payload accepted from the HTTP layer."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    user_id: str
    amount: Decimal = Field(gt=0, le=MAX_AMOUNT)
    description: str = Field(min_length=1, max_length=DESCRIPTION_MAX_LENGTH)

    @field_validator("user_id")
    @classmethod
    def _user_id_format(cls, value: str) -> str:
        if not USER_ID_PATTERN.match(value):
            raise ValueError("userId must be 1-64 letters, digits, '-' or '_'")
        return value

    @field_validator("amount")
    @classmethod
    def _amount_scale(cls, value: Decimal) -> Decimal:
        if value != value.quantize(CENT):
            raise ValueError("amount supports at most two decimal places")
        return value.quantize(CENT)


def parse_create_request(payload) -> CreateOrderRequest:
    """Validate a raw payload, reporting failures in the order error taxonomy."""

    if isinstance(payload, CreateOrderRequest):
        return payload
    try:
        return CreateOrderRequest.model_validate(payload)
    except ValidationError as exc:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        raise InvalidOrderRequest("invalid order request", errors) from exc


class OrderResponse(BaseModel):
    """Materialized order view returned to callers and kept in the cache."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    user_id: str
    amount: Decimal
    description: str
    created_at: datetime
    status: str

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        # SQLite hands back naive datetimes; every stored timestamp is UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(
            id=order.id,
            user_id=order.user_id,
            amount=order.amount,
            description=order.description,
            created_at=order.created_at,
            status=order.status,
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "OrderResponse":
        return cls.model_validate_json(raw)


@dataclass(frozen=True)
class OrderFailure:
    """Typed failure carried by `CreateOrderResult`."""

    kind: ErrorKind
    message: str
    retryable: bool
    stage: str | None = None
    details: tuple[str, ...] = ()

    @classmethod
    def from_error(cls, exc: OrderError, stage: str | None = None) -> "OrderFailure":
        return cls(
            kind=exc.kind,
            message=exc.message,
            retryable=exc.retryable,
            stage=stage,
            details=tuple(getattr(exc, "errors", ())),
        )


@dataclass(frozen=True)
class CreateOrderResult:
    """Outcome of one creation request: an order or a typed failure."""

    order: OrderResponse | None = None
    error: OrderFailure | None = None
    idempotent: bool = False
    resumed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None
