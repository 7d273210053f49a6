import base64
import hashlib
import hmac
import json
import os
import time
import uuid
from typing import Dict, Tuple

from ..errors import InvalidSignature, ValidationError
from . import CallbackEvent, CheckoutSession, PaymentAdapter, ReturnUrls

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
SIGNATURE_HEADER = "x-mockpay-signature"
KINDS = ("succeeded", "failed", "canceled")


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    name = "mockpay"

    def __init__(self, secret: str = MOCK_SECRET) -> None:
        self.secret = secret

    async def create_checkout_session(
        self, amount: int, currency: str, reference: str,
        return_urls: ReturnUrls,
    ) -> CheckoutSession:
        psid = f"mock_{uuid.uuid4().hex}"
        redirect_url = f"/mockpay/{psid}?ref={reference}"
        return {"provider_session_id": psid, "redirect_url": redirect_url}

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(
        self, psid: str, reference: str, amount: int, currency: str,
        kind: str,
    ) -> Tuple[bytes, Dict[str, str]]:
        """Signed webhook body and headers, as the mock provider sends them."""
        if kind not in KINDS:
            raise ValidationError("invalid kind")
        event = {
            "type": f"payment.{kind}",
            "payment_session_id": psid,
            "external_transaction_id": reference,
            "amount": amount,
            "currency": currency,
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }
        payload = json.dumps(event).encode()
        headers = {
            SIGNATURE_HEADER: self.sign(payload),
            "content-type": "application/json",
        }
        return payload, headers

    def verify_callback(
        self, raw_payload: bytes, headers: dict, path: str = ""
    ) -> CallbackEvent:
        sig = headers.get(SIGNATURE_HEADER)
        expected = self.sign(raw_payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise InvalidSignature()
        try:
            event = json.loads(raw_payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidSignature("Invalid JSON")
        if not isinstance(event, dict):
            raise InvalidSignature("Invalid JSON")

        kind = str(event.get("type", "")).split(".")[-1]
        txn = event.get("external_transaction_id") or ""
        return CallbackEvent(
            external_transaction_id=txn,
            status=kind,
            verified=True,
            event_key=event.get("idempotency_key") or f"{txn}:{kind}",
            payload=event,
        )
