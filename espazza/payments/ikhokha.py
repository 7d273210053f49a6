"""iKhokha paylink adapter.

Requests and callbacks are authenticated the same way: ``IK-SIGN`` is the
hex HMAC-SHA256, keyed with the application key, of the request path
(including the query string) followed by the raw body, with quotes,
backslashes and NULs escaped first.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
from urllib.parse import urlsplit

import httpx

from ..errors import InvalidSignature, UpstreamError
from . import CallbackEvent, CheckoutSession, PaymentAdapter, ReturnUrls

log = logging.getLogger(__name__)

STATUS_MAP = {
    "SUCCESS": "success",
    "FAILURE": "failed",
    "FAILED": "failed",
    "CANCELLED": "cancelled",
    "CANCELED": "cancelled",
}


def _escape(s: str) -> str:
    return re.sub(r"[\\\"']", lambda m: "\\" + m.group(0), s).replace(
        "\x00", "\\0"
    )


def payload_to_sign(url_or_path: str, body: str = "") -> str:
    parts = urlsplit(url_or_path)
    path = parts.path + (f"?{parts.query}" if parts.query else "")
    return _escape(path + body)


class IkhokhaPay(PaymentAdapter):
    name = "ikhokha"

    def __init__(self, *, app_id: str, app_key: str, api_url: str,
                 http: httpx.AsyncClient, mode: str = "live") -> None:
        self.app_id = app_id
        self.app_key = app_key
        self.api_url = api_url
        self.http = http
        self.mode = mode

    def sign(self, url_or_path: str, body: str = "") -> str:
        return hmac.new(
            self.app_key.encode(),
            payload_to_sign(url_or_path, body).encode(),
            hashlib.sha256,
        ).hexdigest()

    async def create_checkout_session(
        self, amount: int, currency: str, reference: str,
        return_urls: ReturnUrls,
    ) -> CheckoutSession:
        body = json.dumps({
            "entityID": reference,
            "externalEntityID": reference,
            "amount": amount,
            "currency": currency,
            "requesterUrl": return_urls["success"],
            "mode": self.mode,
            "externalTransactionID": reference,
            "urls": {
                "callbackUrl": return_urls["callback"],
                "successPageUrl": return_urls["success"],
                "failurePageUrl": return_urls["failure"],
                "cancelUrl": return_urls["cancel"],
            },
        }, separators=(",", ":"))

        try:
            r = await self.http.post(
                self.api_url,
                content=body,
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                    "IK-APPID": self.app_id,
                    "IK-SIGN": self.sign(self.api_url, body),
                },
            )
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPStatusError as e:
            log.warning("ikhokha rejected paylink request",
                        extra={"status": e.response.status_code,
                               "reference": reference})
            raise UpstreamError("Payment provider rejected the request") \
                from e
        except (httpx.HTTPError, ValueError) as e:
            log.warning("ikhokha unreachable", extra={"reference": reference})
            raise UpstreamError("Payment provider unavailable") from e

        url = data.get("paylinkUrl") if isinstance(data, dict) else None
        if not url:
            raise UpstreamError("Payment provider returned no paylink")
        return {
            "provider_session_id": str(data.get("paylinkID") or ""),
            "redirect_url": url,
        }

    def verify_callback(
        self, raw_payload: bytes, headers: dict, path: str = ""
    ) -> CallbackEvent:
        sig = headers.get("ik-sign")
        app_id = headers.get("ik-appid")
        try:
            body = raw_payload.decode()
        except UnicodeDecodeError:
            raise InvalidSignature("Invalid payload")
        expected = self.sign(path, body)
        if not sig or not hmac.compare_digest(expected, sig):
            raise InvalidSignature()
        if app_id is not None and not hmac.compare_digest(app_id,
                                                          self.app_id):
            raise InvalidSignature()
        try:
            event = json.loads(body)
        except json.JSONDecodeError:
            raise InvalidSignature("Invalid JSON")
        if not isinstance(event, dict):
            raise InvalidSignature("Invalid JSON")

        raw_status = str(event.get("status", "")).upper()
        status = STATUS_MAP.get(raw_status, raw_status.lower())
        txn = str(event.get("externalTransactionID") or "")
        paylink = event.get("paylinkID") or txn
        return CallbackEvent(
            external_transaction_id=txn,
            status=status,
            verified=True,
            event_key=f"ikhokha:{paylink}:{status}",
            payload=event,
        )
