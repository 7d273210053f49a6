import asyncio
import json

import httpx

from espazza.helpers import now_ts
from espazza.model.entities import (
    ItemRef, PaymentMethod, Purchase, PurchaseStatus,
)
from espazza.notify import ResendNotifier, dispatch_safely


def _paid(email="buyer@example.com"):
    return Purchase(
        id="p1", buyer_id="buyer-1", buyer_email=email,
        item_ref=ItemRef.parse("ticket:gig-1"), amount=6500, currency="ZAR",
        method=PaymentMethod.CARD, external_transaction_id="txn_1",
        created_at=now_ts(), status=PurchaseStatus.PAID,
        ticket_code="TCK-ABC", settled_at=now_ts(),
    )


def _notifier(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ResendNotifier(api_key="re_test", sender="noreply@espazza.test",
                          http=http)


def test_receipt_email():
    sent = []

    def handler(request):
        sent.append((request.headers["Authorization"],
                     json.loads(request.content)))
        return httpx.Response(200, json={"id": "email_1"})

    assert asyncio.run(dispatch_safely(_notifier(handler), _paid())) is True
    auth, body = sent[0]
    assert auth == "Bearer re_test"
    assert body["to"] == ["buyer@example.com"]
    assert "TCK-ABC" in body["html"]
    assert "ZAR 65.00" in body["html"]


def test_receipt_skipped_without_email():
    def handler(request):
        raise AssertionError("no email should be sent")

    notifier = _notifier(handler)
    assert asyncio.run(dispatch_safely(notifier, _paid(email=None))) is True


def test_delivery_failure_is_contained():
    notifier = _notifier(lambda request: httpx.Response(500))
    assert asyncio.run(dispatch_safely(notifier, _paid())) is False
