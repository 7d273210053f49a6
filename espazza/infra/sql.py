"""Async SQLAlchemy engine setup shared by the ledger and the callback log."""
from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession, async_sessionmaker, create_async_engine,
)

Gated = Callable[[], AsyncContextManager[None]]

ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgresql": "postgresql+asyncpg",
    # hosted backends hand out postgres:// URLs
    "postgres": "postgresql+asyncpg",
}

SQLITE_PRAGMAS = (
    "journal_mode=WAL",
    "busy_timeout=5000",
    "synchronous=NORMAL",
    "foreign_keys=ON",
)


def normalize_async_url(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    driver = ASYNC_DRIVERS.get(scheme)
    if not sep or driver is None:
        return url
    return f"{driver}://{rest}"


def _pool_options(db_url: str) -> Dict[str, Any]:
    if not db_url.startswith("postgresql+asyncpg://"):
        return {}
    return {
        "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
        "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", "30")),
    }


def _db_gate(limit: int) -> Gated:
    # never queue more coroutines on the pool than it can serve
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated() -> AsyncIterator[None]:
        async with sem:
            yield

    return gated


def make_async_engine(database_url: str):
    """Return ``(engine, sessions, gated)`` for ``database_url``.

    Build it inside the event loop that will use it; the gate semaphore and
    pooled connections belong to that loop.
    """
    db_url = normalize_async_url(database_url)
    pool = _pool_options(db_url)
    engine = create_async_engine(db_url, pool_pre_ping=True, **pool)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            for pragma in SQLITE_PRAGMAS:
                cur.execute(f"PRAGMA {pragma};")
            cur.close()

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    gate_limit = int(os.getenv("DB_GATE_LIMIT", pool.get("pool_size", 10)))
    return engine, sessions, _db_gate(gate_limit)
