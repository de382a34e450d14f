"""Database engine, session factory and declarative base."""

import os
import time

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from expert_chat.config import Settings

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

ID_LENGTH = 32


class Base(DeclarativeBase):
    pass


def new_id() -> str:
    """Time-ordered 32-char hex id: 16 chars of nanosecond clock + 16 random."""
    return f"{time.time_ns():016x}{os.urandom(8).hex()}"


def create_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_pre_ping=True,
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)
