"""Abandoned checkout sweep.

Pending purchases older than the timeout are cancelled, which releases their
holds through the normal settle path. Holds that are still pending after
that (their purchase insert failed, or a confirm/release write failed after
settlement) are resolved against the owning purchase.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from . import config
from .errors import PersistenceError
from .helpers import now_ts
from .infra.timings import timeit
from .lifecycle import PurchaseLifecycleManager
from .model.entities import PurchaseStatus

log = logging.getLogger(__name__)

BATCH = 200


async def sweep_once(
    manager: PurchaseLifecycleManager,
    now: Optional[float] = None,
    timeout: Optional[int] = None,
) -> Dict[str, int]:
    now = now_ts() if now is None else now
    if timeout is None:
        timeout = config.PENDING_TIMEOUT_SECONDS
    cutoff = now - timeout
    ledger = manager.ledger
    counts = {"cancelled": 0, "confirmed": 0, "released": 0}

    async with timeit("sweep.purchases"):
        for p in await ledger.list_pending_purchases(cutoff, BATCH):
            result = await manager.cancel(p.id)
            if result.transitioned:
                counts["cancelled"] += 1

    async with timeit("sweep.reservations"):
        for r in await ledger.list_stale_reservations(cutoff, BATCH):
            owner = await ledger.get_purchase_by_reservation(r.id)
            if owner is not None and owner.status is PurchaseStatus.PAID:
                if await manager.capacity.confirm(r.id):
                    counts["confirmed"] += 1
            elif owner is None or owner.status.terminal:
                if await manager.capacity.release(r.id):
                    counts["released"] += 1

    if any(counts.values()):
        log.info("sweep finished", extra=counts)
    return counts


async def run_forever(manager: PurchaseLifecycleManager,
                      interval: int = config.SWEEP_INTERVAL_SECONDS) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await sweep_once(manager)
        except PersistenceError:
            # next tick retries; nothing is lost by skipping one
            log.warning("sweep failed", exc_info=True)
