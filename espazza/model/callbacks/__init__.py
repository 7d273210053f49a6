# model/callbacks/__init__.py
"""Audit log of verified payment provider callbacks, one entry per event."""
from __future__ import annotations
import os
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.ext.asyncio import async_sessionmaker

from ...infra.sql import Gated
from ..entities import CallbackRecord
from ._redis import CallbackLog as RedisCallbackLog
from ._sql import CallbackLog as SqlCallbackLog

# 'sql' | 'redis' | 'memory'
BACKEND = os.getenv("CALLBACK_BACKEND", "sql").lower()
TTL_SECONDS = int(os.getenv("CALLBACK_TTL_SECONDS", str(30 * 24 * 3600)))


class MemoryCallbackLog:
    def __init__(self) -> None:
        self.records: Dict[str, CallbackRecord] = {}

    async def create_schema(self) -> None:
        return None

    async def record(self, rec: CallbackRecord) -> bool:
        if rec.event_key in self.records:
            return False
        self.records[rec.event_key] = rec
        return True

    async def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        rows = sorted(self.records.values(), key=lambda r: r.received_at,
                      reverse=True)[:limit]
        return [{
            "event_key": r.event_key,
            "external_transaction_id": r.external_transaction_id,
            "status": r.status,
            "received_at": r.received_at,
        } for r in rows]


def new_log(*, engine: Optional[AsyncEngine] = None,
            sessions: Optional[async_sessionmaker[AsyncSession]] = None,
            gated: Optional[Gated] = None,
            r: Optional[redis.Redis] = None,
            backend: Optional[str] = None):
    backend = (backend or BACKEND).lower()
    if backend == "memory":
        return MemoryCallbackLog()
    if backend == "redis":
        if r is None:
            raise RuntimeError("CallbackLog(redis) requires r=redis.Redis")
        return RedisCallbackLog(r=r, ttl_seconds=TTL_SECONDS)
    if backend == "sql":
        if engine is None or sessions is None or gated is None:
            raise RuntimeError(
                "CallbackLog(sql) requires engine, sessions and gated"
            )
        return SqlCallbackLog(engine=engine, sessions=sessions, gated=gated)
    raise RuntimeError(f"unknown CALLBACK_BACKEND '{backend}'")


__all__ = [
    "MemoryCallbackLog", "RedisCallbackLog", "SqlCallbackLog", "new_log",
    "BACKEND",
]
