"""Purchase lifecycle: pending -> paid | failed | cancelled, exactly once.

Every transition goes through ``LedgerStore.transition_purchase``, a
conditional update on ``status='pending'``. Side effects (capacity confirm
or release, the buyer notification) run only for the caller whose update
actually moved the row, so retried and concurrent callbacks are harmless.
"""
from __future__ import annotations

import logging
from typing import Optional, Tuple

from . import config
from .capacity import Capacity
from .discounts import DiscountResolver, discount_for
from .errors import (
    ConflictError, CouponConflict, LedgerError, NotFoundError,
    PersistenceError, UnknownTransaction, UpstreamError, ValidationError,
)
from .helpers import new_id, new_ticket_code, new_transaction_id, now_ts
from .infra.logs import RECONCILIATION_LOGGER
from .infra.timings import timeit
from .model.entities import (
    AppliedDiscount, Coupon, ItemRef, PaymentMethod, Purchase,
    PurchaseStatus, SettleResult,
)
from .model.ledger import LedgerStore
from .notify import LogNotifier, Notifier, dispatch_safely
from .payments import CheckoutSession, PaymentAdapter, ReturnUrls

log = logging.getLogger(__name__)
reconciliation = logging.getLogger(RECONCILIATION_LOGGER)

PROVIDER_STATUS = {
    "success": PurchaseStatus.PAID,
    "succeeded": PurchaseStatus.PAID,
    "successful": PurchaseStatus.PAID,
    "paid": PurchaseStatus.PAID,
    "failed": PurchaseStatus.FAILED,
    "failure": PurchaseStatus.FAILED,
    "canceled": PurchaseStatus.CANCELLED,
    "cancelled": PurchaseStatus.CANCELLED,
}

# acknowledged, but they leave the purchase pending
IN_FLIGHT = frozenset({
    "pending", "processing", "initiated", "created", "authorized",
    "authorised",
})


def map_provider_status(provider_status: str) -> PurchaseStatus:
    key = str(provider_status or "").strip().lower()
    if key in IN_FLIGHT:
        return PurchaseStatus.PENDING
    status = PROVIDER_STATUS.get(key)
    if status is None:
        raise ValidationError(f"unknown payment status '{provider_status}'")
    return status


def _alert_fields(purchase: Purchase) -> dict:
    return {
        "purchase_id": purchase.id,
        "external_transaction_id": purchase.external_transaction_id,
        "buyer_id": purchase.buyer_id,
        "amount": purchase.amount,
        "currency": purchase.currency,
    }


class PurchaseLifecycleManager:
    def __init__(
        self,
        ledger: LedgerStore,
        *,
        capacity: Optional[Capacity] = None,
        discounts: Optional[DiscountResolver] = None,
        adapter: Optional[PaymentAdapter] = None,
        notifier: Optional[Notifier] = None,
        public_base_url: str = config.PUBLIC_BASE_URL,
    ) -> None:
        self.ledger = ledger
        self.capacity = capacity or Capacity(ledger)
        self.discounts = discounts or DiscountResolver(ledger)
        self.adapter = adapter
        self.notifier = notifier or LogNotifier()
        self.public_base_url = public_base_url.rstrip("/")

    # --------------------------------------------------------------------------
    # Core transitions
    # --------------------------------------------------------------------------

    async def start(
        self,
        buyer_id: str,
        item_ref: ItemRef,
        amount: int,
        currency: str,
        method: PaymentMethod,
        quantity: int = 1,
        buyer_email: Optional[str] = None,
    ) -> Purchase:
        if not buyer_id:
            raise ValidationError("buyer is required")
        if isinstance(amount, bool) or not isinstance(amount, int) \
                or amount < 0:
            raise ValidationError("amount must be a non-negative integer")
        if not currency or not isinstance(currency, str):
            raise ValidationError("currency is required")
        if isinstance(quantity, bool) or not isinstance(quantity, int) \
                or quantity < 1:
            raise ValidationError("quantity must be at least 1")
        method = PaymentMethod(method)
        now = now_ts()

        # hold stock before anyone gets charged
        reservation_id = None
        item_id = str(item_ref)
        if await self.capacity.is_stocked(item_id):
            reservation_id = await self.capacity.reserve(item_id, quantity,
                                                         now)

        purchase = Purchase(
            id=new_id(),
            buyer_id=buyer_id,
            buyer_email=buyer_email,
            item_ref=item_ref,
            quantity=quantity,
            amount=amount,
            currency=currency.upper(),
            method=method,
            external_transaction_id=new_transaction_id(),
            reservation_id=reservation_id,
            created_at=now,
        )
        try:
            async with timeit("ledger.insert_purchase"):
                await self.ledger.insert_purchase(purchase)
        except LedgerError:
            # if this release fails as well the sweep finds an orphaned hold
            if reservation_id is not None:
                await self.capacity.release(reservation_id)
            raise

        log.info("purchase started",
                 extra={"purchase_id": purchase.id,
                        "item_ref": item_id, "method": method.value,
                        "amount": amount})
        return purchase

    async def settle_by_callback(
        self, external_transaction_id: str, provider_status: str
    ) -> SettleResult:
        status = map_provider_status(provider_status)
        async with timeit("ledger.get_purchase_by_txn"):
            purchase = await self.ledger.get_purchase_by_txn(
                external_transaction_id
            )
        if purchase is None:
            log.warning("callback for unknown transaction",
                        extra={"external_transaction_id":
                               external_transaction_id,
                               "provider_status": provider_status})
            raise UnknownTransaction(external_transaction_id)

        if status is PurchaseStatus.PENDING:
            log.info("non-final payment status, nothing to settle",
                     extra={"purchase_id": purchase.id,
                            "provider_status": provider_status})
            return SettleResult(purchase=purchase, transitioned=False)
        if purchase.status.terminal:
            self._check_late_capture(purchase, status)
            return SettleResult(purchase=purchase, transitioned=False)
        return await self._settle(purchase, status, provider_confirmed=True)

    async def settle_by_coupon(
        self, purchase_id: str, applied: AppliedDiscount
    ) -> SettleResult:
        purchase = await self._require(purchase_id)
        if purchase.method is not PaymentMethod.COUPON:
            raise ValidationError("purchase is not a coupon purchase")
        if purchase.status.terminal:
            return SettleResult(purchase=purchase, transitioned=False)
        return await self._settle(purchase, PurchaseStatus.PAID,
                                  coupon_id=applied.coupon_id)

    async def cancel(self, purchase_id: str) -> SettleResult:
        purchase = await self._require(purchase_id)
        if purchase.status.terminal:
            return SettleResult(purchase=purchase, transitioned=False)
        return await self._settle(purchase, PurchaseStatus.CANCELLED)

    async def _require(self, purchase_id: str) -> Purchase:
        purchase = await self.ledger.get_purchase(purchase_id)
        if purchase is None:
            raise NotFoundError("Purchase not found")
        return purchase

    async def _settle(
        self,
        purchase: Purchase,
        status: PurchaseStatus,
        *,
        coupon_id: Optional[str] = None,
        provider_confirmed: bool = False,
    ) -> SettleResult:
        ticket_code = None
        if status is PurchaseStatus.PAID and purchase.reservation_id:
            ticket_code = new_ticket_code()

        try:
            async with timeit("ledger.transition_purchase"):
                updated = await self.ledger.transition_purchase(
                    purchase.id, status, now_ts(),
                    ticket_code=ticket_code, coupon_id=coupon_id,
                )
        except PersistenceError:
            if provider_confirmed and status is PurchaseStatus.PAID:
                reconciliation.error(
                    "payment captured but ledger write failed",
                    extra=_alert_fields(purchase),
                )
            raise

        if updated is None:
            # someone else settled it between our read and our update
            current = await self._require(purchase.id)
            if provider_confirmed:
                self._check_late_capture(current, status)
            return SettleResult(purchase=current, transitioned=False)

        log.info("purchase settled",
                 extra={"purchase_id": updated.id,
                        "status": updated.status.value})
        await self._apply_capacity(updated)
        if updated.status is PurchaseStatus.PAID:
            await dispatch_safely(self.notifier, updated)
        return SettleResult(purchase=updated, transitioned=True)

    async def _apply_capacity(self, purchase: Purchase) -> None:
        rid = purchase.reservation_id
        if rid is None:
            return
        try:
            if purchase.status is PurchaseStatus.PAID:
                await self.capacity.confirm(rid)
            else:
                await self.capacity.release(rid)
        except PersistenceError:
            # the purchase is already terminal; sweep_once settles the hold
            log.warning("reservation left pending for the sweep",
                        extra={"purchase_id": purchase.id,
                               "reservation_id": rid})

    def _check_late_capture(self, purchase: Purchase,
                            reported: PurchaseStatus) -> None:
        if reported is PurchaseStatus.PAID and purchase.status in (
            PurchaseStatus.CANCELLED, PurchaseStatus.FAILED
        ):
            reconciliation.error(
                "payment captured for a purchase that is no longer payable",
                extra={**_alert_fields(purchase),
                       "status": purchase.status.value},
            )

    # --------------------------------------------------------------------------
    # Checkout flows
    # --------------------------------------------------------------------------

    def return_urls(self, purchase: Purchase) -> ReturnUrls:
        base = self.public_base_url
        ref = purchase.id
        return {
            "success": f"{base}/checkout/success?purchase={ref}",
            "failure": f"{base}/checkout/failure?purchase={ref}",
            "cancel": f"{base}/checkout/cancel?purchase={ref}",
            "callback": f"{base}/payments/webhook",
        }

    async def begin_card_checkout(
        self,
        buyer_id: str,
        item_ref: ItemRef,
        amount: int,
        currency: str,
        quantity: int = 1,
        buyer_email: Optional[str] = None,
    ) -> Tuple[Purchase, CheckoutSession]:
        if self.adapter is None:
            raise UpstreamError("No payment provider configured")
        purchase = await self.start(buyer_id, item_ref, amount, currency,
                                    PaymentMethod.CARD, quantity, buyer_email)
        try:
            async with timeit("provider.create_checkout_session"):
                session = await self.adapter.create_checkout_session(
                    purchase.amount, purchase.currency,
                    purchase.external_transaction_id,
                    self.return_urls(purchase),
                )
        except UpstreamError:
            # nobody was redirected, so nobody can pay for it
            await self.cancel(purchase.id)
            raise

        await self.ledger.set_provider_session(
            purchase.id, session["provider_session_id"]
        )
        purchase.provider_session_id = session["provider_session_id"]
        return purchase, session

    async def checkout_with_coupon(
        self,
        buyer_id: str,
        item_ref: ItemRef,
        price: int,
        currency: str,
        code: str,
        quantity: int = 1,
        buyer_email: Optional[str] = None,
    ) -> SettleResult:
        check = await self.discounts.validate(code, buyer_id, item_ref)
        if not check.valid:
            raise CouponConflict(check.reason)
        return await self._coupon_checkout(check.coupon, buyer_id, item_ref,
                                           price, currency, quantity,
                                           buyer_email)

    async def redeem(
        self,
        buyer_id: str,
        coupon_id: str,
        item_ref: ItemRef,
        price: int,
        currency: str,
        buyer_email: Optional[str] = None,
    ) -> SettleResult:
        check = await self.discounts.validate_id(coupon_id, buyer_id)
        if not check.valid:
            raise CouponConflict(check.reason)
        return await self._coupon_checkout(check.coupon, buyer_id, item_ref,
                                           price, currency, 1, buyer_email)

    async def _coupon_checkout(
        self,
        coupon: Coupon,
        buyer_id: str,
        item_ref: ItemRef,
        price: int,
        currency: str,
        quantity: int,
        buyer_email: Optional[str],
    ) -> SettleResult:
        if isinstance(price, bool) or not isinstance(price, int) \
                or price < 0:
            raise ValidationError("amount must be a non-negative integer")
        # a coupon settles the purchase outright; any remainder is waived
        total = price - discount_for(coupon, price)
        purchase = await self.start(buyer_id, item_ref, total, currency,
                                    PaymentMethod.COUPON, quantity,
                                    buyer_email)
        try:
            applied = await self.discounts.apply(coupon.id, buyer_id,
                                                 item_ref, price)
        except (ConflictError, PersistenceError):
            await self.cancel(purchase.id)
            raise
        try:
            return await self.settle_by_coupon(purchase.id, applied)
        except PersistenceError:
            # usage is committed but the purchase is still pending
            reconciliation.error(
                "coupon redeemed but ledger write failed",
                extra={**_alert_fields(purchase), "coupon_id": coupon.id},
            )
            raise

    # --------------------------------------------------------------------------
    # Reads
    # --------------------------------------------------------------------------

    async def get_purchase(self, purchase_id: str,
                           buyer_id: Optional[str] = None) -> Purchase:
        purchase = await self.ledger.get_purchase(purchase_id)
        if purchase is None or (buyer_id is not None
                                and purchase.buyer_id != buyer_id):
            raise NotFoundError("Purchase not found")
        return purchase

    async def list_purchases(self, buyer_id: Optional[str] = None,
                             limit: int = 200) -> list:
        limit = max(1, min(limit, 500))
        return await self.ledger.list_purchases(buyer_id=buyer_id,
                                                limit=limit)

    async def verify_ticket(
        self, purchase_id: str
    ) -> Tuple[bool, Optional[Purchase]]:
        """A ticket is valid iff its purchase is paid."""
        purchase = await self.ledger.get_purchase(purchase_id)
        if purchase is None:
            return False, None
        return purchase.status is PurchaseStatus.PAID, purchase
