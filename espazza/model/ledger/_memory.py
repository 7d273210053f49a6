# model/ledger/_memory.py
"""
In-process ledger for tests and single-worker development.

Each method does its checks and writes without awaiting in between, so on a
single event loop every call is atomic, exactly like one conditional UPDATE
on the SQL backend. Records are copied on the way in and out.
"""

from __future__ import annotations
from dataclasses import replace
from typing import Any, Dict, List, Optional

from ...errors import (
    CapacityExceeded, ConflictError, CouponConflict, NotFoundError,
)
from ..entities import (
    CapacityItem, Coupon, CouponUsage, DiscountType, Purchase,
    PurchaseStatus, Reservation, ReservationStatus, coupon_refusal,
)
from .interface import LedgerStore


class MemoryLedgerStore(LedgerStore):
    def __init__(self) -> None:
        self.purchases: Dict[str, Purchase] = {}
        self.coupons: Dict[str, Coupon] = {}
        self.usages: List[CouponUsage] = []
        self.capacity: Dict[str, int] = {}
        self.reservations: Dict[str, Reservation] = {}
        # coupon_id:user_id keys of one-per-user redemptions
        self._dedupe: set[str] = set()

    # ---- purchases

    async def insert_purchase(self, purchase: Purchase) -> None:
        if purchase.id in self.purchases:
            raise ConflictError("duplicate_purchase")
        for p in self.purchases.values():
            if p.external_transaction_id == purchase.external_transaction_id:
                raise ConflictError("duplicate_transaction")
        self.purchases[purchase.id] = replace(purchase)

    async def get_purchase(self, purchase_id: str) -> Optional[Purchase]:
        p = self.purchases.get(purchase_id)
        return replace(p) if p else None

    async def get_purchase_by_txn(
        self, external_transaction_id: str
    ) -> Optional[Purchase]:
        for p in self.purchases.values():
            if p.external_transaction_id == external_transaction_id:
                return replace(p)
        return None

    async def get_purchase_by_reservation(
        self, reservation_id: str
    ) -> Optional[Purchase]:
        for p in self.purchases.values():
            if p.reservation_id == reservation_id:
                return replace(p)
        return None

    async def transition_purchase(
        self,
        purchase_id: str,
        new_status: PurchaseStatus,
        settled_at: float,
        *,
        ticket_code: Optional[str] = None,
        coupon_id: Optional[str] = None,
    ) -> Optional[Purchase]:
        p = self.purchases.get(purchase_id)
        if p is None or p.status is not PurchaseStatus.PENDING:
            return None
        p.status = new_status
        p.settled_at = settled_at
        p.ticket_code = ticket_code or p.ticket_code
        p.coupon_id = coupon_id or p.coupon_id
        return replace(p)

    async def set_provider_session(
        self, purchase_id: str, provider_session_id: str
    ) -> None:
        p = self.purchases.get(purchase_id)
        if p is not None:
            p.provider_session_id = provider_session_id

    async def list_pending_purchases(
        self, created_before: float, limit: int = 200
    ) -> List[Purchase]:
        rows = sorted(
            (p for p in self.purchases.values()
             if p.status is PurchaseStatus.PENDING
             and p.created_at < created_before),
            key=lambda p: p.created_at,
        )
        return [replace(p) for p in rows[:limit]]

    async def list_purchases(
        self, buyer_id: Optional[str] = None, limit: int = 200
    ) -> List[Purchase]:
        rows = sorted(
            (p for p in self.purchases.values()
             if buyer_id is None or p.buyer_id == buyer_id),
            key=lambda p: p.created_at,
            reverse=True,
        )
        return [replace(p) for p in rows[:limit]]

    # ---- coupons

    def _code_taken(self, code: str, other_than: Optional[str]) -> bool:
        return any(c.code == code and c.id != other_than
                   for c in self.coupons.values())

    async def insert_coupon(self, coupon: Coupon) -> None:
        if self._code_taken(coupon.code, None):
            raise ConflictError("code_taken", "Coupon code already exists")
        self.coupons[coupon.id] = replace(coupon)

    async def get_coupon(self, coupon_id: str) -> Optional[Coupon]:
        c = self.coupons.get(coupon_id)
        return replace(c) if c else None

    async def get_coupon_by_code(self, code: str) -> Optional[Coupon]:
        for c in self.coupons.values():
            if c.code == code:
                return replace(c)
        return None

    async def update_coupon(
        self, coupon_id: str, fields: Dict[str, Any]
    ) -> Optional[Coupon]:
        c = self.coupons.get(coupon_id)
        if c is None:
            return None
        if "code" in fields and self._code_taken(fields["code"], coupon_id):
            raise ConflictError("code_taken", "Coupon code already exists")
        for key, value in fields.items():
            if key in ("id", "usage_count", "created_at", "created_by"):
                continue
            if key == "discount_type":
                value = DiscountType(value)
            if hasattr(c, key):
                setattr(c, key, value)
        return replace(c)

    async def delete_coupon(self, coupon_id: str) -> bool:
        if coupon_id not in self.coupons:
            return False
        if any(u.coupon_id == coupon_id for u in self.usages):
            return False
        del self.coupons[coupon_id]
        return True

    async def list_coupons(self) -> List[Coupon]:
        rows = sorted(self.coupons.values(), key=lambda c: c.created_at,
                      reverse=True)
        return [replace(c) for c in rows]

    async def list_usages(self, coupon_id: str) -> List[CouponUsage]:
        return [replace(u) for u in self.usages if u.coupon_id == coupon_id]

    async def has_usage(self, coupon_id: str, user_id: str) -> bool:
        return any(u.coupon_id == coupon_id and u.user_id == user_id
                   for u in self.usages)

    async def redeem_coupon(
        self, coupon: Coupon, usage: CouponUsage, now: float
    ) -> Coupon:
        current = self.coupons.get(coupon.id)
        reason = coupon_refusal(current, now)
        if reason:
            raise CouponConflict(reason)
        key = f"{current.id}:{usage.user_id}"
        if current.one_per_user and key in self._dedupe:
            raise CouponConflict("already_used")

        # both writes happen together or not at all
        if current.one_per_user:
            self._dedupe.add(key)
        self.usages.append(replace(usage, coupon_id=current.id))
        current.usage_count += 1
        current.updated_at = now
        return replace(current)

    # ---- capacity

    async def put_capacity_item(
        self, item_id: str, capacity: int
    ) -> CapacityItem:
        self.capacity[item_id] = capacity
        return CapacityItem(id=item_id, capacity_remaining=capacity)

    async def get_capacity_item(self, item_id: str) -> Optional[CapacityItem]:
        if item_id not in self.capacity:
            return None
        return CapacityItem(id=item_id,
                            capacity_remaining=self.capacity[item_id])

    async def list_capacity_items(self) -> List[CapacityItem]:
        return [CapacityItem(id=k, capacity_remaining=v)
                for k, v in sorted(self.capacity.items())]

    async def reserve(
        self, item_id: str, quantity: int, reservation_id: str, now: float
    ) -> Reservation:
        if item_id not in self.capacity:
            raise NotFoundError(f"Unknown capacity item {item_id}")
        if self.capacity[item_id] < quantity:
            raise CapacityExceeded(item_id)
        self.capacity[item_id] -= quantity
        r = Reservation(id=reservation_id, item_id=item_id,
                        quantity=quantity, created_at=now)
        self.reservations[reservation_id] = r
        return replace(r)

    async def confirm_reservation(self, reservation_id: str) -> bool:
        r = self.reservations.get(reservation_id)
        if r is None or r.status is not ReservationStatus.PENDING:
            return False
        r.status = ReservationStatus.CONFIRMED
        return True

    async def release_reservation(self, reservation_id: str) -> bool:
        r = self.reservations.get(reservation_id)
        if r is None or r.status is not ReservationStatus.PENDING:
            return False
        r.status = ReservationStatus.RELEASED
        self.capacity[r.item_id] += r.quantity
        return True

    async def get_reservation(
        self, reservation_id: str
    ) -> Optional[Reservation]:
        r = self.reservations.get(reservation_id)
        return replace(r) if r else None

    async def list_stale_reservations(
        self, created_before: float, limit: int = 200
    ) -> List[Reservation]:
        rows = sorted(
            (r for r in self.reservations.values()
             if r.status is ReservationStatus.PENDING
             and r.created_at < created_before),
            key=lambda r: r.created_at,
        )
        return [replace(r) for r in rows[:limit]]
