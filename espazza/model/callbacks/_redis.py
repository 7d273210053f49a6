from __future__ import annotations
import json
from typing import Any, Dict, List
import redis.asyncio as redis
from redis.exceptions import RedisError

from ...errors import PersistenceError
from ..entities import CallbackRecord


# ---- keys
def k_cb(event_key: str) -> str: return f"cb:{event_key}"


CALLBACK_INDEX = "callbacks"
INDEX_MAX = 10_000


class CallbackLog:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def create_schema(self) -> None:
        return None

    async def record(self, rec: CallbackRecord) -> bool:
        doc = json.dumps({
            "event_key": rec.event_key,
            "external_transaction_id": rec.external_transaction_id,
            "status": rec.status,
            "received_at": rec.received_at,
            "payload": rec.payload,
        }, default=str)
        try:
            # NX gate: first writer of the event key wins
            ok = await self.r.set(k_cb(rec.event_key), doc, nx=True,
                                  ex=self.ttl)
            if not ok:
                return False
            pipe = self.r.pipeline(transaction=True)
            pipe.zadd(CALLBACK_INDEX, {rec.event_key: rec.received_at})
            pipe.zremrangebyrank(CALLBACK_INDEX, 0, -(INDEX_MAX + 1))
            await pipe.execute()
        except RedisError as e:
            raise PersistenceError("Callback log unavailable") from e
        return True

    async def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        try:
            keys = await self.r.zrevrange(CALLBACK_INDEX, 0,
                                          max(0, limit - 1))
            if not keys:
                return []
            docs = await self.r.mget([k_cb(k) for k in keys])
        except RedisError as e:
            raise PersistenceError("Callback log unavailable") from e

        items = []
        for key, doc in zip(keys, docs):
            # house-keeping: entry expired but still indexed
            if doc is None:
                await self.r.zrem(CALLBACK_INDEX, key)
                continue
            d = json.loads(doc)
            d.pop("payload", None)
            items.append(d)
        return items
