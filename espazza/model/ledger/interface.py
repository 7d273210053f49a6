"""Ledger store interface.

Stores are swappable and return entity dataclasses. Every mutating call is a
single atomic step at the store; callers sequence those steps and never
read-modify-write a counter or a status in application memory.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..entities import (
    CapacityItem, Coupon, CouponUsage, Purchase, PurchaseStatus, Reservation,
)


class LedgerStore(ABC):

    async def create_schema(self) -> None:
        return None

    # ---- purchases

    @abstractmethod
    async def insert_purchase(self, purchase: Purchase) -> None: ...

    @abstractmethod
    async def get_purchase(self, purchase_id: str) -> Optional[Purchase]: ...

    @abstractmethod
    async def get_purchase_by_txn(
        self, external_transaction_id: str
    ) -> Optional[Purchase]: ...

    @abstractmethod
    async def transition_purchase(
        self,
        purchase_id: str,
        new_status: PurchaseStatus,
        settled_at: float,
        *,
        ticket_code: Optional[str] = None,
        coupon_id: Optional[str] = None,
    ) -> Optional[Purchase]:
        """Compare-and-swap out of ``pending``.

        Returns the updated purchase when this call performed the
        transition, ``None`` when the purchase was no longer pending.
        """

    @abstractmethod
    async def set_provider_session(
        self, purchase_id: str, provider_session_id: str
    ) -> None: ...

    @abstractmethod
    async def list_pending_purchases(
        self, created_before: float, limit: int = 200
    ) -> List[Purchase]: ...

    @abstractmethod
    async def list_purchases(
        self, buyer_id: Optional[str] = None, limit: int = 200
    ) -> List[Purchase]: ...

    @abstractmethod
    async def get_purchase_by_reservation(
        self, reservation_id: str
    ) -> Optional[Purchase]: ...

    # ---- coupons

    @abstractmethod
    async def insert_coupon(self, coupon: Coupon) -> None:
        """Raises ConflictError('code_taken') on a duplicate code."""

    @abstractmethod
    async def get_coupon(self, coupon_id: str) -> Optional[Coupon]: ...

    @abstractmethod
    async def get_coupon_by_code(self, code: str) -> Optional[Coupon]: ...

    @abstractmethod
    async def update_coupon(
        self, coupon_id: str, fields: Dict[str, Any]
    ) -> Optional[Coupon]:
        """Admin edit of descriptive fields; never touches usage_count."""

    @abstractmethod
    async def delete_coupon(self, coupon_id: str) -> bool:
        """Hard delete, only while the coupon has no usage rows."""

    @abstractmethod
    async def list_coupons(self) -> List[Coupon]: ...

    @abstractmethod
    async def list_usages(self, coupon_id: str) -> List[CouponUsage]: ...

    @abstractmethod
    async def has_usage(self, coupon_id: str, user_id: str) -> bool: ...

    @abstractmethod
    async def redeem_coupon(
        self, coupon: Coupon, usage: CouponUsage, now: float
    ) -> Coupon:
        """Increment usage_count and insert the usage row, both or neither.

        Raises CouponConflict with reason 'invalid', 'expired',
        'limit_reached' or 'already_used'.
        """

    # ---- capacity

    @abstractmethod
    async def put_capacity_item(
        self, item_id: str, capacity: int
    ) -> CapacityItem: ...

    @abstractmethod
    async def get_capacity_item(
        self, item_id: str
    ) -> Optional[CapacityItem]: ...

    @abstractmethod
    async def list_capacity_items(self) -> List[CapacityItem]: ...

    @abstractmethod
    async def reserve(
        self, item_id: str, quantity: int, reservation_id: str, now: float
    ) -> Reservation:
        """Decrement capacity if enough remains and record the hold.

        Raises NotFoundError for an unknown item, CapacityExceeded when the
        remaining capacity is below ``quantity``.
        """

    @abstractmethod
    async def confirm_reservation(self, reservation_id: str) -> bool: ...

    @abstractmethod
    async def release_reservation(self, reservation_id: str) -> bool:
        """pending -> released and restore capacity; True only once."""

    @abstractmethod
    async def get_reservation(
        self, reservation_id: str
    ) -> Optional[Reservation]: ...

    @abstractmethod
    async def list_stale_reservations(
        self, created_before: float, limit: int = 200
    ) -> List[Reservation]: ...

    async def close(self) -> None:
        return None
