"""Purchase notifications.

Delivery is best effort: a settled purchase stays settled whether or not the
buyer ever hears about it, so callers go through ``dispatch_safely``.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from . import config
from .helpers import is_valid_email, to_iso
from .model.entities import Purchase

log = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


class Notifier(ABC):
    @abstractmethod
    async def purchase_settled(self, purchase: Purchase) -> None: ...


class LogNotifier(Notifier):
    async def purchase_settled(self, purchase: Purchase) -> None:
        log.info(
            "purchase settled",
            extra={
                "purchase_id": purchase.id,
                "buyer_id": purchase.buyer_id,
                "item_ref": str(purchase.item_ref),
                "status": purchase.status.value,
                "ticket_code": purchase.ticket_code,
            },
        )


def _format_amount(amount: int, currency: str) -> str:
    return f"{currency} {amount / 100:.2f}"


class ResendNotifier(Notifier):
    """Emails the buyer a receipt through the Resend HTTP API."""

    def __init__(self, *, api_key: str, sender: str,
                 http: httpx.AsyncClient) -> None:
        self.api_key = api_key
        self.sender = sender
        self.http = http

    def render(self, purchase: Purchase) -> dict:
        lines = [
            "<p>Thank you for your purchase on eSpazza.</p>",
            f"<p>Item: {purchase.item_ref}</p>",
            f"<p>Amount: "
            f"{_format_amount(purchase.amount, purchase.currency)}</p>",
            f"<p>Paid: {to_iso(purchase.settled_at)}</p>",
        ]
        if purchase.ticket_code:
            lines.append(f"<p>Your ticket code: "
                         f"<strong>{purchase.ticket_code}</strong></p>")
        return {
            "from": self.sender,
            "to": [purchase.buyer_email],
            "subject": "Your eSpazza purchase",
            "html": "\n".join(lines),
        }

    async def purchase_settled(self, purchase: Purchase) -> None:
        if not is_valid_email(purchase.buyer_email):
            log.info("no buyer email, skipping receipt",
                     extra={"purchase_id": purchase.id})
            return
        r = await self.http.post(
            RESEND_URL,
            json=self.render(purchase),
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        r.raise_for_status()


def new_notifier(http: Optional[httpx.AsyncClient] = None) -> Notifier:
    if config.RESEND_API_KEY and http is not None:
        return ResendNotifier(api_key=config.RESEND_API_KEY,
                              sender=config.NOTIFY_FROM, http=http)
    return LogNotifier()


async def dispatch_safely(notifier: Notifier, purchase: Purchase) -> bool:
    """Deliver the notification; log and report failure, never raise."""
    try:
        await notifier.purchase_settled(purchase)
    except (httpx.HTTPError, OSError, ValueError):
        log.warning("notification failed", exc_info=True,
                    extra={"purchase_id": purchase.id})
        return False
    return True
