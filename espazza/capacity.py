"""Provisional capacity holds for stocked items (event seats, product units)."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .errors import ValidationError
from .helpers import new_id, now_ts
from .infra.timings import timeit
from .model.entities import CapacityItem
from .model.ledger import LedgerStore

log = logging.getLogger(__name__)


class Capacity:
    def __init__(self, ledger: LedgerStore) -> None:
        self.ledger = ledger

    async def is_stocked(self, item_id: str) -> bool:
        return await self.ledger.get_capacity_item(item_id) is not None

    async def reserve(self, item_id: str, quantity: int = 1,
                      now: Optional[float] = None) -> str:
        """Hold ``quantity`` units; raises CapacityExceeded when sold out."""
        if quantity < 1:
            raise ValidationError("quantity must be at least 1")
        rid = new_id()
        async with timeit("ledger.reserve"):
            await self.ledger.reserve(item_id, quantity, rid,
                                      now if now is not None else now_ts())
        return rid

    async def confirm(self, reservation_id: str) -> bool:
        async with timeit("ledger.confirm_reservation"):
            return await self.ledger.confirm_reservation(reservation_id)

    async def release(self, reservation_id: str) -> bool:
        async with timeit("ledger.release_reservation"):
            released = await self.ledger.release_reservation(reservation_id)
        if released:
            log.info("reservation released",
                     extra={"reservation_id": reservation_id})
        return released

    async def stock(self, item_id: str, capacity: int) -> CapacityItem:
        if capacity < 0:
            raise ValidationError("capacity must be non-negative")
        item = await self.ledger.put_capacity_item(item_id, capacity)
        log.info("capacity set", extra={"item_id": item_id,
                                        "capacity": capacity})
        return item

    async def inventory(self) -> List[Dict[str, object]]:
        return [
            {"item_id": c.id, "capacity_remaining": c.capacity_remaining}
            for c in await self.ledger.list_capacity_items()
        ]
