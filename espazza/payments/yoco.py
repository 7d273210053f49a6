"""Yoco Checkout adapter.

Checkouts are created with the secret key as a bearer token. Webhooks carry
``webhook-id``, ``webhook-timestamp`` and ``webhook-signature`` headers; the
signature is ``v1,<base64 HMAC-SHA256>`` over ``"{id}.{timestamp}.{body}"``,
keyed with the base64 part of the ``whsec_`` webhook secret.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from typing import Optional

import httpx

from ..errors import InvalidSignature, UpstreamError
from . import CallbackEvent, CheckoutSession, PaymentAdapter, ReturnUrls

log = logging.getLogger(__name__)

EVENT_STATUS = {
    "payment.succeeded": "succeeded",
    "payment.failed": "failed",
}

# webhook-timestamp may drift this far from our clock
TOLERANCE_SECONDS = 180


def _secret_bytes(webhook_secret: str) -> bytes:
    raw = webhook_secret
    if raw.startswith("whsec_"):
        raw = raw[len("whsec_"):]
    try:
        return base64.b64decode(raw)
    except (binascii.Error, ValueError):
        return webhook_secret.encode()


class YocoPay(PaymentAdapter):
    name = "yoco"

    def __init__(self, *, secret_key: str, webhook_secret: str, api_url: str,
                 http: httpx.AsyncClient) -> None:
        self.secret_key = secret_key
        self.webhook_key = _secret_bytes(webhook_secret)
        self.api_url = api_url
        self.http = http

    def sign(self, webhook_id: str, timestamp: str, body: str) -> str:
        signed = f"{webhook_id}.{timestamp}.{body}".encode()
        mac = hmac.new(self.webhook_key, signed, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    async def create_checkout_session(
        self, amount: int, currency: str, reference: str,
        return_urls: ReturnUrls,
    ) -> CheckoutSession:
        try:
            r = await self.http.post(
                self.api_url,
                json={
                    "amount": amount,
                    "currency": currency,
                    "successUrl": return_urls["success"],
                    "failureUrl": return_urls["failure"],
                    "cancelUrl": return_urls["cancel"],
                    "externalId": reference,
                    "metadata": {"externalTransactionId": reference},
                },
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Idempotency-Key": reference,
                },
            )
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPStatusError as e:
            log.warning("yoco rejected checkout request",
                        extra={"status": e.response.status_code,
                               "reference": reference})
            raise UpstreamError("Payment provider rejected the request") \
                from e
        except (httpx.HTTPError, ValueError) as e:
            log.warning("yoco unreachable", extra={"reference": reference})
            raise UpstreamError("Payment provider unavailable") from e

        url = data.get("redirectUrl") if isinstance(data, dict) else None
        if not url:
            raise UpstreamError("Payment provider returned no checkout url")
        return {
            "provider_session_id": str(data.get("id") or ""),
            "redirect_url": url,
        }

    def _check_signature(self, body: str, headers: dict,
                         now: Optional[float]) -> str:
        webhook_id = headers.get("webhook-id")
        timestamp = headers.get("webhook-timestamp")
        signatures = headers.get("webhook-signature")
        if not webhook_id or not timestamp or not signatures:
            raise InvalidSignature()
        try:
            sent_at = int(timestamp)
        except ValueError:
            raise InvalidSignature()
        now = time.time() if now is None else now
        if abs(now - sent_at) > TOLERANCE_SECONDS:
            raise InvalidSignature("Stale webhook")

        expected = self.sign(webhook_id, timestamp, body)
        # space separated "v1,<sig>" entries; any match will do
        for entry in signatures.split():
            _, _, sig = entry.partition(",")
            if sig and hmac.compare_digest(expected, sig):
                return webhook_id
        raise InvalidSignature()

    def verify_callback(
        self, raw_payload: bytes, headers: dict, path: str = "",
        now: Optional[float] = None,
    ) -> CallbackEvent:
        try:
            body = raw_payload.decode()
        except UnicodeDecodeError:
            raise InvalidSignature("Invalid payload")
        webhook_id = self._check_signature(body, headers, now)
        try:
            event = json.loads(body)
        except json.JSONDecodeError:
            raise InvalidSignature("Invalid JSON")
        if not isinstance(event, dict):
            raise InvalidSignature("Invalid JSON")

        kind = str(event.get("type") or "")
        payment = event.get("payload")
        if not isinstance(payment, dict):
            payment = {}
        metadata = payment.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        return CallbackEvent(
            external_transaction_id=str(
                metadata.get("externalTransactionId") or ""),
            status=EVENT_STATUS.get(kind, kind),
            verified=True,
            event_key=f"yoco:{event.get('id') or webhook_id}",
            payload=event,
        )
