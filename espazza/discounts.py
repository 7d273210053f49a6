"""Coupon validation, redemption and administration."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from .errors import CouponConflict, NotFoundError, ValidationError
from .helpers import from_iso, new_id, now_ts
from .infra.timings import timeit
from .model.entities import (
    AppliedDiscount, Coupon, CouponCheck, CouponUsage, DiscountType, ItemRef,
    coupon_refusal,
)
from .model.ledger import LedgerStore

log = logging.getLogger(__name__)

APPLIED_MESSAGE = "Coupon applied successfully"


def message_for(check: CouponCheck) -> str:
    if check.valid:
        return APPLIED_MESSAGE
    return CouponConflict.MESSAGES.get(check.reason or "invalid",
                                       "Invalid coupon code")


def discount_for(coupon: Coupon, price: int) -> int:
    """Amount taken off ``price`` (minor units); never more than the price."""
    if coupon.discount_type is DiscountType.PERCENTAGE:
        return min(price, price * coupon.discount_amount // 100)
    return min(coupon.discount_amount, price)


def _check_price(price: Any) -> int:
    if isinstance(price, bool) or not isinstance(price, int) or price < 0:
        raise ValidationError("amount must be a non-negative integer")
    return price


def _coupon_fields(body: Dict[str, Any], partial: bool) -> Dict[str, Any]:
    """Validate admin input into ledger column values."""
    out: Dict[str, Any] = {}

    if "code" in body or not partial:
        code = body.get("code")
        if not isinstance(code, str) or not code.strip():
            raise ValidationError("Missing required fields")
        out["code"] = code.strip()

    if "discount_type" in body or not partial:
        try:
            out["discount_type"] = DiscountType(body.get("discount_type"))
        except ValueError:
            raise ValidationError("discount_type must be percentage or fixed")

    if "discount_amount" in body or not partial:
        amount = body.get("discount_amount")
        if isinstance(amount, bool) or not isinstance(amount, int) \
                or amount <= 0:
            raise ValidationError("discount_amount must be a positive integer")
        out["discount_amount"] = amount

    if "description" in body:
        description = body["description"] or None
        if description is not None and not isinstance(description, str):
            raise ValidationError("description must be text")
        out["description"] = description

    if "expiry_date" in body:
        try:
            out["expiry_date"] = from_iso(body["expiry_date"])
        except (TypeError, ValueError):
            raise ValidationError("expiry_date must be an ISO-8601 timestamp")

    if "usage_limit" in body:
        limit = body["usage_limit"]
        if limit in (None, "", 0):
            out["usage_limit"] = None
        elif isinstance(limit, bool) or not isinstance(limit, int) \
                or limit < 0:
            raise ValidationError("usage_limit must be a positive integer")
        else:
            out["usage_limit"] = limit

    if "one_per_user" in body:
        out["one_per_user"] = bool(body["one_per_user"])
    if "is_active" in body:
        out["is_active"] = bool(body["is_active"])

    kind = out.get("discount_type")
    if kind is DiscountType.PERCENTAGE and out.get("discount_amount", 0) > 100:
        raise ValidationError("percentage discount can't exceed 100")
    return out


class DiscountResolver:
    """Prices coupons and records their use.

    ``validate`` only reads. ``apply`` re-runs the same checks and then
    hands the increment and the usage row to the ledger as one atomic step,
    so a lost race surfaces as ``CouponConflict`` with nothing written.
    """

    def __init__(self, ledger: LedgerStore) -> None:
        self.ledger = ledger

    async def _check(self, coupon: Optional[Coupon], user_id: str,
                     now: float) -> CouponCheck:
        reason = coupon_refusal(coupon, now)
        if reason is None and coupon.one_per_user:
            if await self.ledger.has_usage(coupon.id, user_id):
                reason = "already_used"
        if reason is not None:
            # refusals don't echo the coupon back
            return CouponCheck(valid=False, reason=reason)
        return CouponCheck(valid=True, coupon=coupon)

    async def validate(self, code: str, user_id: str,
                       item_ref: Optional[ItemRef] = None) -> CouponCheck:
        if not code or not isinstance(code, str):
            raise ValidationError("Coupon code is required")
        async with timeit("ledger.get_coupon"):
            coupon = await self.ledger.get_coupon_by_code(code)
        return await self._check(coupon, user_id, now_ts())

    async def validate_id(self, coupon_id: str, user_id: str) -> CouponCheck:
        if not coupon_id or not isinstance(coupon_id, str):
            raise ValidationError("Coupon ID is required")
        coupon = await self.ledger.get_coupon(coupon_id)
        return await self._check(coupon, user_id, now_ts())

    async def apply(self, coupon_id: str, user_id: str, item_ref: ItemRef,
                    price: int) -> AppliedDiscount:
        price = _check_price(price)
        now = now_ts()
        coupon = await self.ledger.get_coupon(coupon_id)
        check = await self._check(coupon, user_id, now)
        if not check.valid:
            raise CouponConflict(check.reason)

        usage = CouponUsage(id=new_id(), coupon_id=coupon.id, user_id=user_id,
                            item_ref=item_ref, used_at=now)
        async with timeit("ledger.redeem_coupon"):
            redeemed = await self.ledger.redeem_coupon(coupon, usage, now)

        applied = discount_for(redeemed, price)
        log.info("coupon redeemed",
                 extra={"coupon_id": coupon.id, "user_id": user_id,
                        "item_ref": str(item_ref), "applied": applied})
        return AppliedDiscount(coupon_id=coupon.id, applied_amount=applied,
                               total=price - applied)

    # ---- administration

    async def create_coupon(self, body: Dict[str, Any],
                            created_by: Optional[str] = None) -> Coupon:
        fields = _coupon_fields(body, partial=False)
        now = now_ts()
        coupon = Coupon(
            id=new_id(),
            created_at=now,
            updated_at=now,
            created_by=created_by,
            usage_count=0,
            **fields,
        )
        await self.ledger.insert_coupon(coupon)
        log.info("coupon created", extra={"coupon_id": coupon.id,
                                          "code": coupon.code})
        return coupon

    async def update_coupon(self, coupon_id: str,
                            body: Dict[str, Any]) -> Coupon:
        current = await self.ledger.get_coupon(coupon_id)
        if current is None:
            raise NotFoundError("Coupon not found")
        fields = _coupon_fields(body, partial=True)
        kind = fields.get("discount_type", current.discount_type)
        amount = fields.get("discount_amount", current.discount_amount)
        if kind is DiscountType.PERCENTAGE and amount > 100:
            raise ValidationError("percentage discount can't exceed 100")
        limit = fields.get("usage_limit")
        if limit is not None and limit < current.usage_count:
            raise ValidationError("usage_limit can't be below usage_count")
        fields["updated_at"] = now_ts()
        updated = await self.ledger.update_coupon(coupon_id, fields)
        if updated is None:
            raise NotFoundError("Coupon not found")
        return updated

    async def remove_coupon(self, coupon_id: str) -> str:
        """Delete an unused coupon, deactivate a used one.

        Returns ``"deleted"`` or ``"deactivated"``.
        """
        if await self.ledger.get_coupon(coupon_id) is None:
            raise NotFoundError("Coupon not found")
        if await self.ledger.delete_coupon(coupon_id):
            log.info("coupon deleted", extra={"coupon_id": coupon_id})
            return "deleted"
        await self.ledger.update_coupon(
            coupon_id, {"is_active": False, "updated_at": now_ts()}
        )
        log.info("coupon deactivated", extra={"coupon_id": coupon_id})
        return "deactivated"

    async def list_coupons(self) -> List[Tuple[Coupon, List[CouponUsage]]]:
        out = []
        for coupon in await self.ledger.list_coupons():
            out.append((coupon, await self.ledger.list_usages(coupon.id)))
        return out

    async def coupon_detail(
        self, coupon_id: str
    ) -> Tuple[Coupon, List[CouponUsage]]:
        coupon = await self.ledger.get_coupon(coupon_id)
        if coupon is None:
            raise NotFoundError("Coupon not found")
        return coupon, await self.ledger.list_usages(coupon_id)
