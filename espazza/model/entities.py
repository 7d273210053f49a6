from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..errors import ValidationError


class ItemKind(str, Enum):
    RELEASE = "release"
    TICKET = "ticket"
    PRODUCT = "product"
    EVENT_FEE = "event_fee"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not PurchaseStatus.PENDING


class PaymentMethod(str, Enum):
    CARD = "card"
    COUPON = "coupon"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    RELEASED = "released"


@dataclass(frozen=True)
class ItemRef:
    kind: ItemKind
    id: str

    @classmethod
    def parse(cls, raw: str) -> "ItemRef":
        """Parse ``ticket:42`` (or ``Ticket#42``) into an ItemRef."""
        if not raw or not isinstance(raw, str):
            raise ValidationError("itemRef is required")
        sep = ":" if ":" in raw else "#"
        kind, _, item_id = raw.partition(sep)
        try:
            k = ItemKind(kind.strip().lower())
        except ValueError:
            raise ValidationError(f"unknown item kind '{kind}'")
        if not item_id.strip():
            raise ValidationError("itemRef is missing an id")
        return cls(kind=k, id=item_id.strip())

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


# ----------------------------
# Ledger records
# ----------------------------
@dataclass
class Purchase:
    id: str
    buyer_id: str
    item_ref: ItemRef
    amount: int  # minor units
    currency: str
    method: PaymentMethod
    external_transaction_id: str
    created_at: float
    status: PurchaseStatus = PurchaseStatus.PENDING
    buyer_email: Optional[str] = None
    quantity: int = 1
    reservation_id: Optional[str] = None
    coupon_id: Optional[str] = None
    provider_session_id: Optional[str] = None
    ticket_code: Optional[str] = None
    settled_at: Optional[float] = None


@dataclass
class Coupon:
    id: str
    code: str
    discount_type: DiscountType
    discount_amount: int
    created_at: float
    description: Optional[str] = None
    expiry_date: Optional[float] = None
    usage_limit: Optional[int] = None
    one_per_user: bool = False
    usage_count: int = 0
    is_active: bool = True
    created_by: Optional[str] = None
    updated_at: Optional[float] = None


@dataclass
class CouponUsage:
    id: str
    coupon_id: str
    user_id: str
    item_ref: ItemRef
    used_at: float


@dataclass
class CapacityItem:
    id: str
    capacity_remaining: int


@dataclass
class Reservation:
    id: str
    item_id: str
    quantity: int
    created_at: float
    status: ReservationStatus = ReservationStatus.PENDING


@dataclass
class CallbackRecord:
    event_key: str
    external_transaction_id: str
    status: str
    received_at: float
    payload: dict = field(default_factory=dict)


def coupon_refusal(coupon: Optional[Coupon], now: float) -> Optional[str]:
    """First reason a coupon can't be redeemed right now, ignoring who asks.

    Order matters: an expired coupon reports 'expired' whatever its usage.
    """
    if coupon is None or not coupon.is_active:
        return "invalid"
    if coupon.expiry_date is not None and coupon.expiry_date < now:
        return "expired"
    if (coupon.usage_limit is not None
            and coupon.usage_count >= coupon.usage_limit):
        return "limit_reached"
    return None


# ----------------------------
# Service results
# ----------------------------
@dataclass(frozen=True)
class CouponCheck:
    valid: bool
    reason: Optional[str] = None
    coupon: Optional[Coupon] = None


@dataclass(frozen=True)
class AppliedDiscount:
    coupon_id: str
    applied_amount: int
    total: int


@dataclass(frozen=True)
class SettleResult:
    purchase: Purchase
    # True only for the call whose conditional update moved it out of pending
    transitioned: bool

    @property
    def status(self) -> PurchaseStatus:
        return self.purchase.status
