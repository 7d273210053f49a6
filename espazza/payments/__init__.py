from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, TypedDict

import httpx


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CheckoutSession(TypedDict):
    provider_session_id: str
    redirect_url: str


class ReturnUrls(TypedDict):
    success: str
    failure: str
    cancel: str
    callback: str


@dataclass
class CallbackEvent:
    external_transaction_id: str
    # provider vocabulary, e.g. "succeeded" | "failed" | "canceled"
    status: str
    verified: bool
    # provider event id (or a stand-in) used to log each delivery once
    event_key: str
    payload: dict = field(default_factory=dict)


class PaymentAdapter(ABC):
    name: str = ""

    @abstractmethod
    async def create_checkout_session(
        self, amount: int, currency: str, reference: str,
        return_urls: ReturnUrls,
    ) -> CheckoutSession:
        """Raises UpstreamError when the provider can't be reached."""

    @abstractmethod
    def verify_callback(
        self, raw_payload: bytes, headers: dict, path: str = ""
    ) -> CallbackEvent:
        """Raises InvalidSignature unless the payload is authentic."""


def new_adapter(provider: str,
                http: Optional[httpx.AsyncClient] = None) -> PaymentAdapter:
    from .. import config
    from .ikhokha import IkhokhaPay
    from .mockpay import MockPay
    from .yoco import YocoPay

    if provider == "mockpay":
        return MockPay()
    if provider == "ikhokha":
        if http is None:
            raise RuntimeError("IkhokhaPay requires an httpx.AsyncClient")
        return IkhokhaPay(
            app_id=config.IKHOKHA_APP_ID,
            app_key=config.IKHOKHA_APP_KEY,
            api_url=config.IKHOKHA_API_URL,
            http=http,
        )
    if provider == "yoco":
        if http is None:
            raise RuntimeError("YocoPay requires an httpx.AsyncClient")
        return YocoPay(
            secret_key=config.YOCO_SECRET_KEY,
            webhook_secret=config.YOCO_WEBHOOK_SECRET,
            api_url=config.YOCO_API_URL,
            http=http,
        )
    raise RuntimeError(f"unknown PAYMENT_PROVIDER '{provider}'")


__all__ = [
    "CallbackEvent", "CheckoutSession", "PaymentAdapter", "ReturnUrls",
    "new_adapter",
]
