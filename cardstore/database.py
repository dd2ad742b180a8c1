"""
Database models for the card record store.

Uses SQLAlchemy 2.0 with the asyncio extension (aiosqlite by default).
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func

from cardstore.config import settings


# =============================================================================
# Database Engine and Session
# =============================================================================

def create_engine(url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """Create an async engine; in-memory SQLite shares one connection."""
    url = url or settings.database.url
    kwargs: dict[str, Any] = {
        "echo": settings.database.echo if echo is None else echo,
    }
    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith("aiosqlite:")):
        kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
    return create_async_engine(url, **kwargs)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, autoflush=False, expire_on_commit=False)


@asynccontextmanager
async def get_session(session_factory: async_sessionmaker[AsyncSession]):
    """Context manager for database sessions."""
    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


# =============================================================================
# Base Model
# =============================================================================

class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# =============================================================================
# Card Models
# =============================================================================

class CardRow(Base):
    """
    A stored business card.

    ``payload`` holds the card fields as JSON when the store is unencrypted.
    When a key is attached the fields are sealed into ``ciphertext``/``iv``
    instead; fingerprint and migration columns always stay in clear so they
    can be indexed and counted without the key.
    """
    __tablename__ = "cards"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    encrypted: Mapped[bool] = mapped_column(Boolean, default=False)
    ciphertext: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # base64
    iv: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # base64

    fingerprint: Mapped[Optional[str]] = mapped_column(String(80), nullable=True, index=True)
    migration_status: Mapped[str] = mapped_column(String(20), default="none", index=True)
    migration_version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<CardRow {self.id} ({self.migration_status})>"


class SettingRow(Base):
    """Small JSON documents (key derivation config, store metadata)."""
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[dict] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<SettingRow {self.key}>"


async def create_all_tables(engine: AsyncEngine) -> None:
    """Create all database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

