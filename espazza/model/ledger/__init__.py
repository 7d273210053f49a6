# model/ledger/__init__.py
from __future__ import annotations
import os
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.ext.asyncio import async_sessionmaker

from ...infra.sql import Gated
from .interface import LedgerStore
from ._memory import MemoryLedgerStore
from ._sql import SqlLedgerStore

BACKEND = os.getenv("LEDGER_BACKEND", "sql").lower()  # 'sql' | 'memory'


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, engine: Optional[AsyncEngine] = None,
              sessions: Optional[async_sessionmaker[AsyncSession]] = None,
              gated: Optional[Gated] = None,
              backend: Optional[str] = None) -> LedgerStore:
    backend = (backend or BACKEND).lower()
    if backend == "memory":
        return MemoryLedgerStore()
    if backend == "sql":
        if engine is None or sessions is None or gated is None:
            raise RuntimeError(
                "LedgerStore(sql) requires engine, sessions and gated"
            )
        return SqlLedgerStore(engine=engine, sessions=sessions, gated=gated)
    raise RuntimeError(f"unknown LEDGER_BACKEND '{backend}'")


__all__ = [
    "LedgerStore", "MemoryLedgerStore", "SqlLedgerStore", "new_store",
    "BACKEND",
]
