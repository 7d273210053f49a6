import asyncio

from espazza.helpers import now_ts
from espazza.model.entities import (
    PaymentMethod, PurchaseStatus, ReservationStatus,
)
from espazza.sweep import sweep_once

TIMEOUT = 1800


def _later():
    return now_ts() + TIMEOUT + 60


def test_abandoned_checkout_is_cancelled(store, manager, ticket):
    asyncio.run(store.put_capacity_item(str(ticket), 1))
    purchase = asyncio.run(manager.start("buyer-1", ticket, 6500, "ZAR",
                                         PaymentMethod.CARD))
    assert store.capacity[str(ticket)] == 0

    counts = asyncio.run(sweep_once(manager, now=_later(), timeout=TIMEOUT))
    assert counts == {"cancelled": 1, "confirmed": 0, "released": 0}
    assert store.purchases[purchase.id].status is PurchaseStatus.CANCELLED
    assert store.capacity[str(ticket)] == 1

    # a second pass has nothing left to do
    counts = asyncio.run(sweep_once(manager, now=_later(), timeout=TIMEOUT))
    assert counts == {"cancelled": 0, "confirmed": 0, "released": 0}
    assert store.capacity[str(ticket)] == 1


def test_recent_checkout_is_left_alone(store, manager, ticket):
    asyncio.run(store.put_capacity_item(str(ticket), 1))
    purchase = asyncio.run(manager.start("buyer-1", ticket, 6500, "ZAR",
                                         PaymentMethod.CARD))
    counts = asyncio.run(sweep_once(manager, timeout=TIMEOUT))
    assert counts["cancelled"] == 0
    assert store.purchases[purchase.id].status is PurchaseStatus.PENDING


def test_orphaned_hold_is_released(store, capacity, manager):
    asyncio.run(capacity.stock("ticket:gig-1", 2))
    rid = asyncio.run(capacity.reserve("ticket:gig-1", 2))

    counts = asyncio.run(sweep_once(manager, now=_later(), timeout=TIMEOUT))
    assert counts["released"] == 1
    assert store.reservations[rid].status is ReservationStatus.RELEASED
    assert store.capacity["ticket:gig-1"] == 2


def test_paid_purchase_hold_is_confirmed(store, manager, ticket):
    asyncio.run(store.put_capacity_item(str(ticket), 1))
    purchase = asyncio.run(manager.start("buyer-1", ticket, 6500, "ZAR",
                                         PaymentMethod.CARD))
    # paid, but the confirm write never happened
    asyncio.run(store.transition_purchase(purchase.id, PurchaseStatus.PAID,
                                          now_ts()))

    counts = asyncio.run(sweep_once(manager, now=_later(), timeout=TIMEOUT))
    assert counts == {"cancelled": 0, "confirmed": 1, "released": 0}
    assert store.reservations[purchase.reservation_id].status is \
        ReservationStatus.CONFIRMED
    assert store.capacity[str(ticket)] == 0
