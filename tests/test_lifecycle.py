import asyncio
import logging

import httpx
import pytest

from espazza.errors import (
    CapacityExceeded, CouponConflict, PersistenceError, UnknownTransaction,
    UpstreamError, ValidationError,
)
from espazza.infra.logs import RECONCILIATION_LOGGER
from espazza.lifecycle import PurchaseLifecycleManager, map_provider_status
from espazza.model.entities import (
    PaymentMethod, PurchaseStatus, ReservationStatus,
)
from espazza.model.ledger import MemoryLedgerStore
from espazza.notify import Notifier


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    async def purchase_settled(self, purchase):
        self.sent.append(purchase.id)


class BrokenNotifier(Notifier):
    async def purchase_settled(self, purchase):
        raise httpx.ConnectError("mail relay down")


class FlakyLedger(MemoryLedgerStore):
    async def transition_purchase(self, *args, **kwargs):
        raise PersistenceError("Ledger store unavailable")


def _start(manager, item, amount=2000, method=PaymentMethod.CARD, qty=1):
    return asyncio.run(manager.start("buyer-1", item, amount, "ZAR", method,
                                     quantity=qty))


def test_settle_twice_is_idempotent(store, manager, ticket):
    asyncio.run(store.put_capacity_item(str(ticket), 5))
    notifier = RecordingNotifier()
    manager.notifier = notifier
    purchase = _start(manager, ticket)
    assert store.capacity[str(ticket)] == 4

    first = asyncio.run(manager.settle_by_callback(
        purchase.external_transaction_id, "success"))
    second = asyncio.run(manager.settle_by_callback(
        purchase.external_transaction_id, "success"))

    assert first.status is PurchaseStatus.PAID
    assert second.status is PurchaseStatus.PAID
    assert first.transitioned and not second.transitioned
    assert store.capacity[str(ticket)] == 4
    assert store.reservations[purchase.reservation_id].status is \
        ReservationStatus.CONFIRMED
    assert first.purchase.ticket_code.startswith("TCK-")
    assert second.purchase.ticket_code == first.purchase.ticket_code
    assert notifier.sent == [purchase.id]


def test_concurrent_callbacks_settle_once(store, manager, ticket):
    asyncio.run(store.put_capacity_item(str(ticket), 5))
    purchase = _start(manager, ticket)

    async def scenario():
        return await asyncio.gather(*(
            manager.settle_by_callback(purchase.external_transaction_id,
                                       "succeeded")
            for _ in range(10)
        ))

    results = asyncio.run(scenario())
    assert sum(r.transitioned for r in results) == 1
    assert {r.status for r in results} == {PurchaseStatus.PAID}
    assert store.capacity[str(ticket)] == 4


def test_failed_payment_releases_capacity(store, manager, ticket):
    asyncio.run(store.put_capacity_item(str(ticket), 1))
    purchase = _start(manager, ticket)
    assert store.capacity[str(ticket)] == 0

    result = asyncio.run(manager.settle_by_callback(
        purchase.external_transaction_id, "FAILED"))
    assert result.status is PurchaseStatus.FAILED
    assert result.purchase.ticket_code is None
    assert store.capacity[str(ticket)] == 1


def test_terminal_states_are_final(store, manager, release):
    purchase = _start(manager, release)
    asyncio.run(manager.settle_by_callback(
        purchase.external_transaction_id, "paid"))

    cancelled = asyncio.run(manager.cancel(purchase.id))
    failed = asyncio.run(manager.settle_by_callback(
        purchase.external_transaction_id, "failed"))
    assert not cancelled.transitioned and not failed.transitioned
    assert store.purchases[purchase.id].status is PurchaseStatus.PAID


def test_cancel_releases_reservation(store, manager, ticket):
    asyncio.run(store.put_capacity_item(str(ticket), 2))
    purchase = _start(manager, ticket, qty=2)
    assert store.capacity[str(ticket)] == 0

    result = asyncio.run(manager.cancel(purchase.id))
    assert result.transitioned
    assert result.status is PurchaseStatus.CANCELLED
    assert store.capacity[str(ticket)] == 2
    # again: nothing to release twice
    assert not asyncio.run(manager.cancel(purchase.id)).transitioned
    assert store.capacity[str(ticket)] == 2


def test_unknown_transaction(manager):
    with pytest.raises(UnknownTransaction):
        asyncio.run(manager.settle_by_callback("txn_missing", "success"))


def test_unknown_provider_status(manager, release):
    purchase = _start(manager, release)
    with pytest.raises(ValidationError):
        asyncio.run(manager.settle_by_callback(
            purchase.external_transaction_id, "refunded"))


def test_non_final_status_is_acknowledged(store, manager, ticket):
    asyncio.run(store.put_capacity_item(str(ticket), 1))
    purchase = _start(manager, ticket)
    result = asyncio.run(manager.settle_by_callback(
        purchase.external_transaction_id, "PENDING"))
    assert not result.transitioned
    assert result.status is PurchaseStatus.PENDING
    assert store.capacity[str(ticket)] == 0

    # the final status still settles it afterwards
    result = asyncio.run(manager.settle_by_callback(
        purchase.external_transaction_id, "SUCCESS"))
    assert result.transitioned and result.status is PurchaseStatus.PAID


def test_provider_status_vocabulary():
    assert map_provider_status("SUCCESS") is PurchaseStatus.PAID
    assert map_provider_status("successful") is PurchaseStatus.PAID
    assert map_provider_status("failure") is PurchaseStatus.FAILED
    assert map_provider_status("canceled") is PurchaseStatus.CANCELLED
    assert map_provider_status("processing") is PurchaseStatus.PENDING


def test_sold_out_start_writes_nothing(store, manager, ticket):
    asyncio.run(store.put_capacity_item(str(ticket), 1))
    _start(manager, ticket)
    with pytest.raises(CapacityExceeded):
        _start(manager, ticket)
    assert len(store.purchases) == 1
    assert store.capacity[str(ticket)] == 0


def test_unstocked_items_skip_reservation(manager, release):
    purchase = _start(manager, release)
    assert purchase.reservation_id is None
    result = asyncio.run(manager.settle_by_callback(
        purchase.external_transaction_id, "success"))
    assert result.purchase.ticket_code is None


def test_late_capture_raises_alert(store, manager, release, caplog):
    purchase = _start(manager, release)
    asyncio.run(manager.cancel(purchase.id))

    with caplog.at_level(logging.ERROR, logger=RECONCILIATION_LOGGER):
        result = asyncio.run(manager.settle_by_callback(
            purchase.external_transaction_id, "success"))

    assert result.status is PurchaseStatus.CANCELLED
    alerts = [r for r in caplog.records if r.name == RECONCILIATION_LOGGER]
    assert len(alerts) == 1
    assert alerts[0].purchase_id == purchase.id


def test_ledger_failure_after_payment_alerts(mockpay, release, caplog):
    manager = PurchaseLifecycleManager(FlakyLedger(), adapter=mockpay)
    purchase = _start(manager, release)

    with caplog.at_level(logging.ERROR, logger=RECONCILIATION_LOGGER):
        with pytest.raises(PersistenceError):
            asyncio.run(manager.settle_by_callback(
                purchase.external_transaction_id, "success"))

    assert any(r.name == RECONCILIATION_LOGGER
               and r.external_transaction_id ==
               purchase.external_transaction_id
               for r in caplog.records)



def test_coupon_settle_failure_alerts(store, manager, discounts, release,
                                      caplog):
    coupon = asyncio.run(discounts.create_coupon({
        "code": "FREE", "discount_type": "percentage",
        "discount_amount": 100,
    }))

    async def down(*args, **kwargs):
        raise PersistenceError("Ledger store unavailable")

    store.transition_purchase = down
    with caplog.at_level(logging.ERROR, logger=RECONCILIATION_LOGGER):
        with pytest.raises(PersistenceError):
            asyncio.run(manager.checkout_with_coupon(
                "buyer-1", release, 2000, "ZAR", "FREE"))

    alerts = [r for r in caplog.records if r.name == RECONCILIATION_LOGGER]
    assert len(alerts) == 1
    assert alerts[0].coupon_id == coupon.id
    (purchase,) = store.purchases.values()
    assert alerts[0].purchase_id == purchase.id
    assert store.coupons[coupon.id].usage_count == 1

def test_notification_failure_does_not_undo_payment(store, manager, release):
    manager.notifier = BrokenNotifier()
    purchase = _start(manager, release)
    result = asyncio.run(manager.settle_by_callback(
        purchase.external_transaction_id, "success"))
    assert result.transitioned
    assert store.purchases[purchase.id].status is PurchaseStatus.PAID


def test_card_checkout_attaches_provider_session(store, manager, ticket):
    asyncio.run(store.put_capacity_item(str(ticket), 3))
    purchase, session = asyncio.run(manager.begin_card_checkout(
        "buyer-1", ticket, 6500, "zar"))

    assert purchase.currency == "ZAR"
    assert session["redirect_url"].startswith(
        f"/mockpay/{session['provider_session_id']}")
    assert store.purchases[purchase.id].provider_session_id == \
        session["provider_session_id"]


def test_card_checkout_provider_down_cancels(store, manager, ticket):
    class DownAdapter:
        async def create_checkout_session(self, *args):
            raise UpstreamError("Payment provider unavailable")

    manager.adapter = DownAdapter()
    asyncio.run(store.put_capacity_item(str(ticket), 1))
    with pytest.raises(UpstreamError):
        asyncio.run(manager.begin_card_checkout("buyer-1", ticket, 6500,
                                                "ZAR"))

    (purchase,) = store.purchases.values()
    assert purchase.status is PurchaseStatus.CANCELLED
    assert store.capacity[str(ticket)] == 1


def test_coupon_checkout_settles_immediately(store, manager, discounts,
                                             release):
    coupon = asyncio.run(discounts.create_coupon({
        "code": "FREE", "discount_type": "percentage",
        "discount_amount": 100, "one_per_user": True,
    }))
    result = asyncio.run(manager.checkout_with_coupon(
        "buyer-1", release, 2000, "ZAR", "FREE"))

    assert result.transitioned
    assert result.status is PurchaseStatus.PAID
    assert result.purchase.method is PaymentMethod.COUPON
    assert result.purchase.coupon_id == coupon.id
    assert result.purchase.amount == 0
    assert store.coupons[coupon.id].usage_count == 1

    with pytest.raises(CouponConflict) as exc:
        asyncio.run(manager.checkout_with_coupon(
            "buyer-1", release, 2000, "ZAR", "FREE"))
    assert exc.value.reason == "already_used"
    assert len(store.purchases) == 1


def test_coupon_lost_race_cancels_purchase(store, manager, discounts,
                                           release):
    asyncio.run(discounts.create_coupon({
        "code": "HALF", "discount_type": "percentage",
        "discount_amount": 50,
    }))

    async def lose(*args, **kwargs):
        raise CouponConflict("limit_reached")

    manager.discounts.apply = lose
    with pytest.raises(CouponConflict):
        asyncio.run(manager.checkout_with_coupon(
            "buyer-1", release, 2000, "ZAR", "HALF"))

    (purchase,) = store.purchases.values()
    assert purchase.status is PurchaseStatus.CANCELLED
    assert purchase.amount == 1000


def test_settle_by_coupon_rejects_card_purchase(manager, release):
    from espazza.model.entities import AppliedDiscount

    purchase = _start(manager, release)
    with pytest.raises(ValidationError):
        asyncio.run(manager.settle_by_coupon(
            purchase.id, AppliedDiscount("c1", 100, 1900)))


def test_verify_ticket(store, manager, ticket):
    asyncio.run(store.put_capacity_item(str(ticket), 1))
    purchase = _start(manager, ticket)
    assert asyncio.run(manager.verify_ticket(purchase.id))[0] is False
    asyncio.run(manager.settle_by_callback(
        purchase.external_transaction_id, "success"))
    valid, found = asyncio.run(manager.verify_ticket(purchase.id))
    assert valid and found.id == purchase.id
    assert asyncio.run(manager.verify_ticket("nope")) == (False, None)
