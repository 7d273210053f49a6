from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from . import config
from .discounts import DiscountResolver, message_for
from .errors import (
    AuthError, ConflictError, LedgerError, NotFoundError, UpstreamError,
    ValidationError,
)
from .helpers import ct_equal, is_valid_email, now_ts, to_iso
from .infra.logs import configure_logging, install_request_context
from .infra.sql import make_async_engine
from .infra.timings import aggregates, timeit
from .lifecycle import PurchaseLifecycleManager
from .model import callbacks, ledger
from .model.entities import (
    CallbackRecord, Coupon, CouponUsage, ItemKind, ItemRef, Purchase,
)
from .model.ledger import LedgerStore
from .notify import new_notifier
from .payments import PaymentAdapter, new_adapter
from .payments.mockpay import MockPay
from .sweep import run_forever, sweep_once

log = logging.getLogger(__name__)

app = FastAPI(
    title="eSpazza Checkout",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)
install_request_context(app)


# ---
# error mapping
# ---
@app.exception_handler(LedgerError)
async def _ledger_error(request: Request, exc: LedgerError):
    body: Dict[str, Any] = {"error": exc.code, "message": exc.message}
    if isinstance(exc, ConflictError):
        body["reason"] = exc.reason
    if exc.status_code >= 500:
        log.warning("request failed", extra={"code": exc.code})
    return ORJSONResponse(body, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def _malformed(request: Request, exc: RequestValidationError):
    return ORJSONResponse(
        {"error": "validation_error", "message": "Malformed request"},
        status_code=400,
    )


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    configure_logging()
    log.info("espazza is starting up", extra={
        "ledger_backend": ledger.BACKEND,
        "callback_backend": callbacks.BACKEND,
        "payment_provider": config.PAYMENT_PROVIDER,
    })


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if callbacks.BACKEND == "redis":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            max_connections=config.REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _db_init():
    engine = sessions = gated = None
    if "sql" in (ledger.BACKEND, callbacks.BACKEND):
        engine, sessions, gated = make_async_engine(config.DATABASE_URL)
    app.state.engine = engine

    app.state.ledger = ledger.new_store(
        engine=engine, sessions=sessions, gated=gated
    )
    app.state.callbacks = callbacks.new_log(
        engine=engine, sessions=sessions, gated=gated, r=app.state.redis
    )
    await app.state.ledger.create_schema()
    await app.state.callbacks.create_schema()


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=32
        ),
    )


@app.on_event("startup")
async def _services_start():
    app.state.adapter = new_adapter(config.PAYMENT_PROVIDER, app.state.http)
    app.state.manager = PurchaseLifecycleManager(
        app.state.ledger,
        adapter=app.state.adapter,
        notifier=new_notifier(app.state.http),
    )


@app.on_event("startup")
async def _sweep_start():
    app.state.sweeper = None
    if config.SWEEP_INTERVAL_SECONDS > 0:
        app.state.sweeper = asyncio.create_task(
            run_forever(app.state.manager, config.SWEEP_INTERVAL_SECONDS)
        )


@app.on_event("shutdown")
async def _sweep_stop():
    task = getattr(app.state, "sweeper", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        app.state.sweeper = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    store = getattr(app.state, "ledger", None)
    if store is not None:
        await store.close()
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()
        app.state.engine = None


# ----------------------------
# Dependencies
# ----------------------------
def get_ledger(request: Request) -> LedgerStore:
    return request.app.state.ledger


def get_manager(request: Request) -> PurchaseLifecycleManager:
    return request.app.state.manager


def get_discounts(request: Request) -> DiscountResolver:
    return request.app.state.manager.discounts


def get_adapter(request: Request) -> PaymentAdapter:
    return request.app.state.adapter


def get_callbacks(request: Request):
    return request.app.state.callbacks


def get_http(request: Request) -> httpx.AsyncClient:
    return request.app.state.http


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def current_user(request: Request) -> Dict[str, Any]:
    user = request.session.get("user")
    if not user or not user.get("id"):
        raise AuthError("Please login or create a new account")
    return user


def require_admin(request: Request) -> str:
    if is_admin(request):
        return request.session["admin_user"]
    if request.session.get("user"):
        raise AuthError("Admin privileges required", status_code=403)
    raise AuthError("Authentication required")


# ----------------------------
# Serialization
# ----------------------------
def purchase_json(p: Purchase) -> Dict[str, Any]:
    return {
        "id": p.id,
        "buyer_id": p.buyer_id,
        "item_ref": str(p.item_ref),
        "quantity": p.quantity,
        "amount": p.amount,
        "currency": p.currency,
        "method": p.method.value,
        "status": p.status.value,
        "external_transaction_id": p.external_transaction_id,
        "coupon_id": p.coupon_id,
        "ticket_code": p.ticket_code or "",
        "created_at": to_iso(p.created_at),
        "settled_at": to_iso(p.settled_at),
    }


def coupon_json(c: Coupon,
                usages: Optional[List[CouponUsage]] = None) -> Dict[str, Any]:
    out = {
        "id": c.id,
        "code": c.code,
        "description": c.description,
        "discount_type": c.discount_type.value,
        "discount_amount": c.discount_amount,
        "expiry_date": to_iso(c.expiry_date),
        "usage_limit": c.usage_limit,
        "one_per_user": c.one_per_user,
        "usage_count": c.usage_count,
        "is_active": c.is_active,
        "created_by": c.created_by,
        "created_at": to_iso(c.created_at),
        "updated_at": to_iso(c.updated_at),
    }
    if usages is not None:
        out["coupon_usage"] = [{
            "id": u.id,
            "user_id": u.user_id,
            "item_ref": str(u.item_ref),
            "used_at": to_iso(u.used_at),
        } for u in usages]
    return out


def _coupon_body(payload: dict) -> dict:
    body = dict(payload)
    # older dashboards send the per-user flag under this name
    if "one_time_per_user" in body and "one_per_user" not in body:
        body["one_per_user"] = body.pop("one_time_per_user")
    return body


def _item_ref(payload: dict) -> ItemRef:
    raw = payload.get("itemRef")
    if raw is None and payload.get("releaseId") is not None:
        raw = f"release:{payload['releaseId']}"
    return ItemRef.parse(raw)


def _price(payload: dict, item_ref: ItemRef) -> int:
    amount = payload.get("amount")
    if amount is None and item_ref.kind is ItemKind.RELEASE:
        return config.RELEASE_LISTING_FEE
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise ValidationError("amount must be a non-negative integer")
    return amount


def _currency(payload: dict) -> str:
    currency = payload.get("currency") or config.DEFAULT_CURRENCY
    if not isinstance(currency, str) or len(currency) != 3:
        raise ValidationError("currency must be a 3-letter code")
    return currency.upper()


# ----------------------------
# API: coupons
# ----------------------------
@app.post("/api/coupons/validate")
async def validate_coupon(
    payload: dict,
    user: Dict[str, Any] = Depends(current_user),
    discounts: DiscountResolver = Depends(get_discounts),
):
    code = payload.get("couponCode")
    if not code or not isinstance(code, str):
        raise ValidationError("Coupon code is required")
    item_ref = _item_ref(payload) if (
        payload.get("itemRef") or payload.get("releaseId")
    ) else None

    check = await discounts.validate(code, user["id"], item_ref)
    if not check.valid:
        return {"valid": False, "message": message_for(check),
                "reason": check.reason}
    return {
        "valid": True,
        "discount": check.coupon.discount_amount,
        "discountType": check.coupon.discount_type.value,
        "message": message_for(check),
        "couponId": check.coupon.id,
    }


@app.post("/api/coupons/redeem")
async def redeem_coupon(
    payload: dict,
    user: Dict[str, Any] = Depends(current_user),
    manager: PurchaseLifecycleManager = Depends(get_manager),
):
    coupon_id = payload.get("couponId")
    if not coupon_id or not (payload.get("itemRef")
                             or payload.get("releaseId")):
        raise ValidationError("Coupon ID and Release ID are required")
    item_ref = _item_ref(payload)

    result = await manager.redeem(
        user["id"], str(coupon_id), item_ref,
        _price(payload, item_ref), _currency(payload), user.get("email"),
    )
    return {
        "success": True,
        "message": "Coupon redeemed successfully",
        "purchaseId": result.purchase.id,
        "status": result.status.value,
    }


# ----------------------------
# API: checkout
# ----------------------------
@app.post("/api/checkout")
async def create_checkout(
    payload: dict,
    user: Dict[str, Any] = Depends(current_user),
    manager: PurchaseLifecycleManager = Depends(get_manager),
):
    item_ref = _item_ref(payload)
    amount = _price(payload, item_ref)
    currency = _currency(payload)
    quantity = payload.get("quantity", 1)
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer")

    email = payload.get("email") or user.get("email") or ""
    if not isinstance(email, str):
        raise ValidationError("email must be a valid email address")
    email = email.strip()
    if email and not is_valid_email(email):
        raise ValidationError("email must be a valid email address")

    code = payload.get("couponCode")
    if code:
        result = await manager.checkout_with_coupon(
            user["id"], item_ref, amount, currency, code, quantity,
            email or None,
        )
        p = result.purchase
        return {
            "purchaseId": p.id,
            "externalTransactionId": p.external_transaction_id,
            "amount": p.amount,
            "currency": p.currency,
            "status": p.status.value,
            "ticketCode": p.ticket_code or "",
        }

    purchase, session = await manager.begin_card_checkout(
        user["id"], item_ref, amount, currency, quantity, email or None,
    )
    return {
        "purchaseId": purchase.id,
        "externalTransactionId": purchase.external_transaction_id,
        "redirectUrl": session["redirect_url"],
        "amount": purchase.amount,
        "currency": purchase.currency,
        "status": purchase.status.value,
    }


# ----------------------------
# Webhook endpoint (shared for MockPay/iKhokha)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    adapter: PaymentAdapter = Depends(get_adapter),
    manager: PurchaseLifecycleManager = Depends(get_manager),
    cblog=Depends(get_callbacks),
):
    payload = await request.body()
    headers = dict(request.headers)
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"

    # nothing below runs for an unverified payload
    event = adapter.verify_callback(payload, headers, path)
    if not event.external_transaction_id:
        raise ValidationError("missing transaction reference")

    async with timeit("callbacks.record"):
        first_seen = await cblog.record(CallbackRecord(
            event_key=event.event_key,
            external_transaction_id=event.external_transaction_id,
            status=event.status,
            received_at=now_ts(),
            payload=event.payload,
        ))
    if not first_seen:
        log.info("callback redelivered",
                 extra={"event_key": event.event_key})

    async with timeit("lifecycle.settle_by_callback"):
        result = await manager.settle_by_callback(
            event.external_transaction_id, event.status
        )
    return {
        "ok": True,
        "status": result.status.value,
        "idempotent": not result.transitioned,
    }


# ----------------------------
# API: purchases & tickets
# ----------------------------
@app.get("/api/purchases")
async def list_my_purchases(
    limit: int = 100,
    user: Dict[str, Any] = Depends(current_user),
    manager: PurchaseLifecycleManager = Depends(get_manager),
):
    items = await manager.list_purchases(buyer_id=user["id"], limit=limit)
    return {"items": [purchase_json(p) for p in items], "limit": limit}


@app.get("/api/purchases/{purchase_id}")
async def get_purchase(
    purchase_id: str,
    request: Request,
    user: Dict[str, Any] = Depends(current_user),
    manager: PurchaseLifecycleManager = Depends(get_manager),
):
    owner = None if is_admin(request) else user["id"]
    return purchase_json(await manager.get_purchase(purchase_id, owner))


@app.post("/api/purchases/{purchase_id}/cancel")
async def cancel_purchase(
    purchase_id: str,
    user: Dict[str, Any] = Depends(current_user),
    manager: PurchaseLifecycleManager = Depends(get_manager),
):
    await manager.get_purchase(purchase_id, user["id"])
    result = await manager.cancel(purchase_id)
    return {
        "ok": True,
        "status": result.status.value,
        "idempotent": not result.transitioned,
    }


@app.get("/api/tickets/{purchase_id}/verify")
async def verify_ticket(
    purchase_id: str,
    manager: PurchaseLifecycleManager = Depends(get_manager),
):
    valid, purchase = await manager.verify_ticket(purchase_id)
    if purchase is None:
        return {"valid": False}
    return {
        "valid": valid,
        "status": purchase.status.value,
        "item_ref": str(purchase.item_ref),
        "quantity": purchase.quantity,
        "ticket_code": purchase.ticket_code or "",
    }


# ----------------------------
# Admin: coupons
# ----------------------------
@app.get("/api/coupons")
async def admin_list_coupons(
    _: str = Depends(require_admin),
    discounts: DiscountResolver = Depends(get_discounts),
):
    rows = await discounts.list_coupons()
    return {"coupons": [coupon_json(c, usages) for c, usages in rows]}


@app.post("/api/coupons")
async def admin_create_coupon(
    payload: dict,
    admin: str = Depends(require_admin),
    discounts: DiscountResolver = Depends(get_discounts),
):
    coupon = await discounts.create_coupon(_coupon_body(payload),
                                           created_by=admin)
    return {"coupon": coupon_json(coupon)}


@app.get("/api/coupons/{coupon_id}")
async def admin_get_coupon(
    coupon_id: str,
    _: str = Depends(require_admin),
    discounts: DiscountResolver = Depends(get_discounts),
):
    coupon, usages = await discounts.coupon_detail(coupon_id)
    return {"coupon": coupon_json(coupon, usages)}


@app.put("/api/coupons/{coupon_id}")
async def admin_update_coupon(
    coupon_id: str,
    payload: dict,
    _: str = Depends(require_admin),
    discounts: DiscountResolver = Depends(get_discounts),
):
    coupon = await discounts.update_coupon(coupon_id, _coupon_body(payload))
    return {"coupon": coupon_json(coupon)}


@app.delete("/api/coupons/{coupon_id}")
async def admin_delete_coupon(
    coupon_id: str,
    _: str = Depends(require_admin),
    discounts: DiscountResolver = Depends(get_discounts),
):
    outcome = await discounts.remove_coupon(coupon_id)
    if outcome == "deleted":
        return {"message": "Coupon deleted successfully", "deleted": True}
    return {
        "message": "Coupon has been used and cannot be deleted. "
                   "It has been deactivated instead.",
        "deactivated": True,
    }


# ----------------------------
# Admin: capacity, purchases, operations
# ----------------------------
@app.post("/api/admin/capacity")
async def admin_set_capacity(
    payload: dict,
    _: str = Depends(require_admin),
    manager: PurchaseLifecycleManager = Depends(get_manager),
):
    item_ref = _item_ref(payload)
    capacity = payload.get("capacity")
    if isinstance(capacity, bool) or not isinstance(capacity, int):
        raise ValidationError("capacity must be an integer")
    item = await manager.capacity.stock(str(item_ref), capacity)
    return {"item_id": item.id,
            "capacity_remaining": item.capacity_remaining}


@app.get("/api/inventory")
async def get_inventory(
    _: str = Depends(require_admin),
    manager: PurchaseLifecycleManager = Depends(get_manager),
):
    return {"items": await manager.capacity.inventory()}


@app.get("/api/admin/purchases")
async def api_admin_purchases(
    limit: int = 200,
    _: str = Depends(require_admin),
    manager: PurchaseLifecycleManager = Depends(get_manager),
):
    items = await manager.list_purchases(limit=limit)
    return {"items": [purchase_json(p) for p in items], "limit": limit}


@app.get("/api/admin/callbacks")
async def api_admin_callbacks(
    limit: int = 100,
    _: str = Depends(require_admin),
    cblog=Depends(get_callbacks),
):
    items = await cblog.recent(limit=max(1, min(limit, 500)))
    return {"items": items, "limit": limit}


@app.post("/api/admin/sweep")
async def api_admin_sweep(
    _: str = Depends(require_admin),
    manager: PurchaseLifecycleManager = Depends(get_manager),
):
    return await sweep_once(manager)


@app.get("/api/admin/timings")
async def api_admin_timings(_: str = Depends(require_admin)):
    return {"items": aggregates()}


@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/api/admin/purchases"),
):
    ok_user = ct_equal(username.strip(), config.ADMIN_USERNAME)
    ok_pass = ct_equal(password, config.ADMIN_PASSWORD)
    if not (ok_user and ok_pass):
        raise AuthError("Invalid credentials.")
    request.session["admin_user"] = username.strip()
    # only same-site redirects
    if not next.startswith("/") or next.startswith("//"):
        next = "/api/admin/purchases"
    return RedirectResponse(url=next, status_code=HTTP_303_SEE_OTHER)


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


# ----------------------------
# Auth: exchange a hosted-auth access token for a session
# ----------------------------
@app.post("/auth/session")
async def auth_session(
    payload: dict,
    request: Request,
    http: httpx.AsyncClient = Depends(get_http),
):
    token = payload.get("accessToken")
    if not token or not isinstance(token, str):
        raise ValidationError("accessToken is required")
    if not config.AUTH_URL:
        raise UpstreamError("Authentication service not configured")

    try:
        async with timeit("auth.get_user"):
            r = await http.get(
                f"{config.AUTH_URL.rstrip('/')}/auth/v1/user",
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": config.AUTH_API_KEY,
                },
            )
    except httpx.HTTPError as e:
        raise UpstreamError("Authentication service unavailable") from e
    if r.status_code in (401, 403):
        raise AuthError("Invalid access token")
    if r.status_code != 200:
        raise UpstreamError("Authentication service error")
    try:
        data = r.json()
    except ValueError as e:
        raise UpstreamError("Authentication service error") from e

    user_id = data.get("id") if isinstance(data, dict) else None
    if not user_id:
        raise AuthError("Invalid access token")
    request.session["user"] = {"id": user_id, "email": data.get("email")}
    return {"ok": True, "userId": user_id}


@app.post("/auth/logout")
async def auth_logout(request: Request):
    request.session.pop("user", None)
    return {"ok": True}


# ----------------------------
# MockPay: hosted payment page stand-in
# ----------------------------
async def _mock_session(ledger_store: LedgerStore, adapter: PaymentAdapter,
                        psid: str, ref: str) -> Purchase:
    if not isinstance(adapter, MockPay):
        raise NotFoundError("Not found")
    purchase = await ledger_store.get_purchase_by_txn(ref)
    if purchase is None or purchase.provider_session_id != psid:
        raise NotFoundError("payment session not found")
    return purchase


@app.get("/mockpay/{psid}")
async def mockpay_screen(
    psid: str,
    ref: str,
    ledger_store: LedgerStore = Depends(get_ledger),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    purchase = await _mock_session(ledger_store, adapter, psid, ref)
    return {
        "psid": psid,
        "ref": ref,
        "item_ref": str(purchase.item_ref),
        "amount": purchase.amount,
        "currency": purchase.currency,
        "status": purchase.status.value,
        "emit_url": f"/mockpay/{psid}/emit",
        "kinds": ["succeeded", "failed", "canceled"],
    }


@app.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str,
    t: str = Form(...),
    ref: str = Form(...),
    ledger_store: LedgerStore = Depends(get_ledger),
    adapter: PaymentAdapter = Depends(get_adapter),
    manager: PurchaseLifecycleManager = Depends(get_manager),
    http: httpx.AsyncClient = Depends(get_http),
):
    purchase = await _mock_session(ledger_store, adapter, psid, ref)
    payload, headers = adapter.build_event(
        psid, ref, purchase.amount, purchase.currency, t
    )
    try:
        await http.post(config.MOCK_WEBHOOK_URL, content=payload,
                        headers=headers)
    except httpx.HTTPError:
        # the buyer can press the button again
        log.warning("mock webhook delivery failed", exc_info=True,
                    extra={"psid": psid})

    urls = manager.return_urls(purchase)
    target = {
        "succeeded": urls["success"],
        "failed": urls["failure"],
        "canceled": urls["cancel"],
    }[t]
    return RedirectResponse(url=target, status_code=HTTP_303_SEE_OTHER)
