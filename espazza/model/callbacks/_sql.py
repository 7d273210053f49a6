from __future__ import annotations
import json
from typing import Any, Dict, List

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.ext.asyncio import async_sessionmaker

from ...errors import PersistenceError
from ...infra.sql import Gated
from ..entities import CallbackRecord
from ..ledger.orm import PaymentCallbackRow


class CallbackLog:
    def __init__(
        self, *, engine: AsyncEngine,
        sessions: async_sessionmaker[AsyncSession], gated: Gated
    ) -> None:
        self.engine = engine
        self.sessions = sessions
        self.gated = gated

    async def create_schema(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(
                    PaymentCallbackRow.__table__.create, checkfirst=True
                )
        except SQLAlchemyError as e:
            raise PersistenceError("Callback log unavailable") from e

    async def record(self, rec: CallbackRecord) -> bool:
        """Store the callback once; True if this event key is new."""
        try:
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        row = (await db.execute(text("""
                          INSERT INTO payment_callbacks(
                            event_key, external_transaction_id, status,
                            payload, received_at
                          ) VALUES (:k, :t, :s, :p, :at)
                          ON CONFLICT (event_key) DO NOTHING
                          RETURNING event_key
                        """), {
                            "k": rec.event_key,
                            "t": rec.external_transaction_id,
                            "s": rec.status,
                            "p": json.dumps(rec.payload, default=str),
                            "at": rec.received_at,
                        })).first()
        except SQLAlchemyError as e:
            raise PersistenceError("Callback log unavailable") from e
        return row is not None

    async def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        try:
            async with self.gated():
                async with self.sessions() as db:
                    rows = (await db.execute(text("""
                        SELECT event_key, external_transaction_id, status,
                               received_at
                        FROM payment_callbacks
                        ORDER BY received_at DESC
                        LIMIT :lim
                    """), {"lim": limit})).mappings().all()
        except SQLAlchemyError as e:
            raise PersistenceError("Callback log unavailable") from e
        return [dict(r) for r in rows]
