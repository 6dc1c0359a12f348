"""
Async DB plumbing for the patient-response pipeline.
Uses SQLAlchemy 2.0 + asyncpg driver – no raw SQL strings in app code.
"""

from __future__ import annotations

import os

from sqlalchemy import Insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)
from sqlalchemy.orm import DeclarativeBase


# ──────────────────────────────────────────────────────────────────────
# 1. Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass


SessionMaker = async_sessionmaker[AsyncSession]


# ──────────────────────────────────────────────────────────────────────
# 2. Engine / session factory
# ──────────────────────────────────────────────────────────────────────
def build_url(url: str | None = None) -> str:
    url = url or os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if "+asyncpg" not in url and "+aiosqlite" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url


def create_engine(url: str | None = None) -> AsyncEngine:
    url = build_url(url)
    if url.startswith("sqlite"):
        return create_async_engine(url)
    return create_async_engine(url, pool_size=5, max_overflow=5, pool_pre_ping=True)


def make_session_maker(engine: AsyncEngine) -> SessionMaker:
    return async_sessionmaker(engine, expire_on_commit=False)


# ──────────────────────────────────────────────────────────────────────
# 3. Dialect helpers
# ──────────────────────────────────────────────────────────────────────
def insert_ignore(session: AsyncSession, model) -> Insert:
    """INSERT … ON CONFLICT DO NOTHING for the session's dialect."""
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    if dialect == "sqlite":
        return sqlite.insert(model).on_conflict_do_nothing()
    return postgresql.insert(model).on_conflict_do_nothing()


# ──────────────────────────────────────────────────────────────────────
# 4. DDL helper (tests and local dev; production runs Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all(engine: AsyncEngine):
    from db import models  # noqa: F401  (register tables)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine(engine: AsyncEngine | None):
    if engine is not None:
        await engine.dispose()
