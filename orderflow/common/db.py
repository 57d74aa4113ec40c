"""Database bootstrap helpers for the system-of-record store."""

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from orderflow.common.config import settings


# Single SQLAlchemy engine per process.
engine = create_async_engine(settings.postgres_dsn, pool_pre_ping=True)
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


async def create_tables(bind=engine) -> None:
    """Create missing tables at bootstrap. Not a migration tool."""

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
