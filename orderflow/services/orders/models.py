"""Order service database models.

This DB is the system of record for users and orders, plus the creation
intents that let a partially completed pipeline be resumed.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.common.db import Base


DESCRIPTION_MAX_LENGTH = 500


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class IntentStage(str, Enum):
    """Last pipeline stage an intent has completed, in execution order."""

    RESERVED = "reserved"
    PRIMARY = "primary"
    SECONDARY = "secondary"
    CACHED = "cached"
    PUBLISHED = "published"


STAGE_ORDER = list(IntentStage)


class IntentStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    ABANDONED = "abandoned"
    COMPLETED = "completed"


class User(Base):
    """Owner of orders; placeholder rows are created on first reference."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    email: Mapped[str] = mapped_column(String(100), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Order(Base):
    """Authoritative order row. `id` and `user_id` never change after insert."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    description: Mapped[str] = mapped_column(String(DESCRIPTION_MAX_LENGTH))
    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OrderIntent(Base):
    """Creation intent persisted before the primary write and advanced per stage."""

    __tablename__ = "order_intents"

    order_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    fingerprint: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String(64))
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    description: Mapped[str] = mapped_column(String(DESCRIPTION_MAX_LENGTH))
    order_created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    stage: Mapped[str] = mapped_column(String(20), default=IntentStage.RESERVED.value)
    status: Mapped[str] = mapped_column(String(20), default=IntentStatus.IN_PROGRESS.value, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=1)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
