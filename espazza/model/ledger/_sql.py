# model/ledger/_sql.py
"""
SQL ledger backend (PostgreSQL via asyncpg, SQLite via aiosqlite).

Every status flip and every counter change is one conditional
``UPDATE .. WHERE <expected state> .. RETURNING``. Whether a caller won is
read off the returned row, never off an earlier SELECT.
"""

from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.ext.asyncio import async_sessionmaker

from ...errors import (
    CapacityExceeded, ConflictError, CouponConflict, NotFoundError,
    PersistenceError,
)
from ...infra.sql import Gated
from ..entities import (
    CapacityItem, Coupon, CouponUsage, DiscountType, ItemKind, ItemRef,
    PaymentMethod, Purchase, PurchaseStatus, Reservation, ReservationStatus,
    coupon_refusal,
)
from .interface import LedgerStore
from .orm import Base

log = logging.getLogger(__name__)

PURCHASE_COLS = """
    id, buyer_id, buyer_email, item_kind, item_id, quantity, amount,
    currency, method, status, external_transaction_id, reservation_id,
    coupon_id, provider_session_id, ticket_code, created_at, settled_at
"""

COUPON_COLS = """
    id, code, description, discount_type, discount_amount, expiry_date,
    usage_limit, one_per_user, usage_count, is_active, created_by,
    created_at, updated_at
"""

# admin-editable coupon columns
COUPON_EDITABLE = (
    "code", "description", "discount_type", "discount_amount",
    "expiry_date", "usage_limit", "one_per_user", "is_active", "updated_at",
)


# ------------------------------------------------------------------------------
# Row mapping
# ------------------------------------------------------------------------------

def _opt_float(v) -> Optional[float]:
    return None if v is None else float(v)


def _purchase(r) -> Purchase:
    return Purchase(
        id=r["id"],
        buyer_id=r["buyer_id"],
        buyer_email=r["buyer_email"],
        item_ref=ItemRef(ItemKind(r["item_kind"]), r["item_id"]),
        quantity=int(r["quantity"]),
        amount=int(r["amount"]),
        currency=r["currency"],
        method=PaymentMethod(r["method"]),
        status=PurchaseStatus(r["status"]),
        external_transaction_id=r["external_transaction_id"],
        reservation_id=r["reservation_id"],
        coupon_id=r["coupon_id"],
        provider_session_id=r["provider_session_id"],
        ticket_code=r["ticket_code"],
        created_at=float(r["created_at"]),
        settled_at=_opt_float(r["settled_at"]),
    )


def _coupon(r) -> Coupon:
    return Coupon(
        id=r["id"],
        code=r["code"],
        description=r["description"],
        discount_type=DiscountType(r["discount_type"]),
        discount_amount=int(r["discount_amount"]),
        expiry_date=_opt_float(r["expiry_date"]),
        usage_limit=None if r["usage_limit"] is None else int(r["usage_limit"]),
        one_per_user=bool(r["one_per_user"]),
        usage_count=int(r["usage_count"]),
        is_active=bool(r["is_active"]),
        created_by=r["created_by"],
        created_at=float(r["created_at"]),
        updated_at=_opt_float(r["updated_at"]),
    )


def _usage(r) -> CouponUsage:
    return CouponUsage(
        id=r["id"],
        coupon_id=r["coupon_id"],
        user_id=r["user_id"],
        item_ref=ItemRef(ItemKind(r["item_kind"]), r["item_id"]),
        used_at=float(r["used_at"]),
    )


def _reservation(r) -> Reservation:
    return Reservation(
        id=r["id"],
        item_id=r["item_id"],
        quantity=int(r["quantity"]),
        status=ReservationStatus(r["status"]),
        created_at=float(r["created_at"]),
    )


def _coupon_params(c: Coupon) -> Dict[str, Any]:
    return {
        "id": c.id,
        "code": c.code,
        "description": c.description,
        "discount_type": c.discount_type.value,
        "discount_amount": c.discount_amount,
        "expiry_date": c.expiry_date,
        "usage_limit": c.usage_limit,
        "one_per_user": c.one_per_user,
        "usage_count": c.usage_count,
        "is_active": c.is_active,
        "created_by": c.created_by,
        "created_at": c.created_at,
        "updated_at": c.updated_at,
    }


class SqlLedgerStore(LedgerStore):
    def __init__(
        self, *, engine: AsyncEngine,
        sessions: async_sessionmaker[AsyncSession], gated: Gated
    ) -> None:
        self.engine = engine
        self.sessions = sessions
        self.gated = gated

    async def create_schema(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise PersistenceError("Ledger store unavailable") from e

    async def close(self) -> None:
        await self.engine.dispose()

    # one transaction per store call; driver faults become PersistenceError
    @asynccontextmanager
    async def _tx(self):
        try:
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        yield db
        except SQLAlchemyError as e:
            log.error("ledger store failure", exc_info=True)
            raise PersistenceError("Ledger store unavailable") from e

    # --------------------------------------------------------------------------
    # Purchases
    # --------------------------------------------------------------------------

    async def insert_purchase(self, purchase: Purchase) -> None:
        async with self._tx() as db:
            try:
                await self._insert_purchase(db, purchase)
            except IntegrityError as e:
                raise ConflictError("duplicate_transaction") from e

    async def _insert_purchase(self, db: AsyncSession, purchase: Purchase):
        await db.execute(text(f"""
            INSERT INTO purchases ({PURCHASE_COLS})
            VALUES (
                :id, :buyer_id, :buyer_email, :item_kind, :item_id,
                :quantity, :amount, :currency, :method, :status,
                :external_transaction_id, :reservation_id, :coupon_id,
                :provider_session_id, :ticket_code, :created_at,
                :settled_at
            )
        """), {
            "id": purchase.id,
            "buyer_id": purchase.buyer_id,
            "buyer_email": purchase.buyer_email,
            "item_kind": purchase.item_ref.kind.value,
            "item_id": purchase.item_ref.id,
            "quantity": purchase.quantity,
            "amount": purchase.amount,
            "currency": purchase.currency,
            "method": purchase.method.value,
            "status": purchase.status.value,
            "external_transaction_id": purchase.external_transaction_id,
            "reservation_id": purchase.reservation_id,
            "coupon_id": purchase.coupon_id,
            "provider_session_id": purchase.provider_session_id,
            "ticket_code": purchase.ticket_code,
            "created_at": purchase.created_at,
            "settled_at": purchase.settled_at,
        })

    async def _one_purchase(self, where: str, params: Dict[str, Any]):
        async with self._tx() as db:
            row = (await db.execute(
                text(f"SELECT {PURCHASE_COLS} FROM purchases WHERE {where}"),
                params,
            )).mappings().first()
        return _purchase(row) if row else None

    async def get_purchase(self, purchase_id: str) -> Optional[Purchase]:
        return await self._one_purchase("id=:id", {"id": purchase_id})

    async def get_purchase_by_txn(
        self, external_transaction_id: str
    ) -> Optional[Purchase]:
        return await self._one_purchase(
            "external_transaction_id=:t", {"t": external_transaction_id}
        )

    async def get_purchase_by_reservation(
        self, reservation_id: str
    ) -> Optional[Purchase]:
        return await self._one_purchase(
            "reservation_id=:r", {"r": reservation_id}
        )

    async def transition_purchase(
        self,
        purchase_id: str,
        new_status: PurchaseStatus,
        settled_at: float,
        *,
        ticket_code: Optional[str] = None,
        coupon_id: Optional[str] = None,
    ) -> Optional[Purchase]:
        async with self._tx() as db:
            row = (await db.execute(text(f"""
                UPDATE purchases
                SET status=:new,
                    settled_at=:now,
                    ticket_code=COALESCE(:code, ticket_code),
                    coupon_id=COALESCE(:coupon, coupon_id)
                WHERE id=:id
                  AND status='pending'
                RETURNING {PURCHASE_COLS}
            """), {
                "id": purchase_id,
                "new": new_status.value,
                "now": settled_at,
                "code": ticket_code,
                "coupon": coupon_id,
            })).mappings().first()
        return _purchase(row) if row else None

    async def set_provider_session(
        self, purchase_id: str, provider_session_id: str
    ) -> None:
        async with self._tx() as db:
            await db.execute(text("""
                UPDATE purchases SET provider_session_id=:s WHERE id=:id
            """), {"id": purchase_id, "s": provider_session_id})

    async def list_pending_purchases(
        self, created_before: float, limit: int = 200
    ) -> List[Purchase]:
        async with self._tx() as db:
            rows = (await db.execute(text(f"""
                SELECT {PURCHASE_COLS} FROM purchases
                WHERE status='pending' AND created_at < :before
                ORDER BY created_at
                LIMIT :lim
            """), {"before": created_before, "lim": limit})).mappings().all()
        return [_purchase(r) for r in rows]

    async def list_purchases(
        self, buyer_id: Optional[str] = None, limit: int = 200
    ) -> List[Purchase]:
        where = ""
        params: Dict[str, Any] = {"lim": limit}
        if buyer_id is not None:
            where = "WHERE buyer_id=:b"
            params["b"] = buyer_id
        async with self._tx() as db:
            rows = (await db.execute(text(f"""
                SELECT {PURCHASE_COLS} FROM purchases
                {where}
                ORDER BY created_at DESC
                LIMIT :lim
            """), params)).mappings().all()
        return [_purchase(r) for r in rows]

    # --------------------------------------------------------------------------
    # Coupons
    # --------------------------------------------------------------------------

    async def insert_coupon(self, coupon: Coupon) -> None:
        async with self._tx() as db:
            try:
                await db.execute(text(f"""
                    INSERT INTO coupons ({COUPON_COLS})
                    VALUES (
                        :id, :code, :description, :discount_type,
                        :discount_amount, :expiry_date, :usage_limit,
                        :one_per_user, :usage_count, :is_active,
                        :created_by, :created_at, :updated_at
                    )
                """), _coupon_params(coupon))
            except IntegrityError as e:
                raise ConflictError(
                    "code_taken", "Coupon code already exists"
                ) from e

    async def get_coupon(self, coupon_id: str) -> Optional[Coupon]:
        async with self._tx() as db:
            row = (await db.execute(
                text(f"SELECT {COUPON_COLS} FROM coupons WHERE id=:id"),
                {"id": coupon_id},
            )).mappings().first()
        return _coupon(row) if row else None

    async def get_coupon_by_code(self, code: str) -> Optional[Coupon]:
        async with self._tx() as db:
            row = (await db.execute(
                text(f"SELECT {COUPON_COLS} FROM coupons WHERE code=:code"),
                {"code": code},
            )).mappings().first()
        return _coupon(row) if row else None

    async def update_coupon(
        self, coupon_id: str, fields: Dict[str, Any]
    ) -> Optional[Coupon]:
        fields = {k: v for k, v in fields.items() if k in COUPON_EDITABLE}
        if not fields:
            return await self.get_coupon(coupon_id)
        if isinstance(fields.get("discount_type"), DiscountType):
            fields["discount_type"] = fields["discount_type"].value
        assignments = ", ".join(f"{k}=:{k}" for k in fields)
        async with self._tx() as db:
            try:
                row = (await db.execute(text(f"""
                    UPDATE coupons SET {assignments}
                    WHERE id=:id
                    RETURNING {COUPON_COLS}
                """), {**fields, "id": coupon_id})).mappings().first()
            except IntegrityError as e:
                raise ConflictError(
                    "code_taken", "Coupon code already exists"
                ) from e
        return _coupon(row) if row else None

    async def delete_coupon(self, coupon_id: str) -> bool:
        async with self._tx() as db:
            row = (await db.execute(text("""
                DELETE FROM coupons
                WHERE id=:id
                  AND NOT EXISTS (
                    SELECT 1 FROM coupon_usage WHERE coupon_id=:id
                  )
                RETURNING id
            """), {"id": coupon_id})).first()
        return row is not None

    async def list_coupons(self) -> List[Coupon]:
        async with self._tx() as db:
            rows = (await db.execute(text(f"""
                SELECT {COUPON_COLS} FROM coupons ORDER BY created_at DESC
            """))).mappings().all()
        return [_coupon(r) for r in rows]

    async def list_usages(self, coupon_id: str) -> List[CouponUsage]:
        async with self._tx() as db:
            rows = (await db.execute(text("""
                SELECT id, coupon_id, user_id, item_kind, item_id, used_at
                FROM coupon_usage
                WHERE coupon_id=:c
                ORDER BY used_at
            """), {"c": coupon_id})).mappings().all()
        return [_usage(r) for r in rows]

    async def has_usage(self, coupon_id: str, user_id: str) -> bool:
        async with self._tx() as db:
            row = (await db.execute(text("""
                SELECT 1 FROM coupon_usage
                WHERE coupon_id=:c AND user_id=:u
                LIMIT 1
            """), {"c": coupon_id, "u": user_id})).first()
        return row is not None

    async def redeem_coupon(
        self, coupon: Coupon, usage: CouponUsage, now: float
    ) -> Coupon:
        async with self._tx() as db:
            # conditional increment; the same predicate as coupon_refusal()
            row = (await db.execute(text(f"""
                UPDATE coupons
                SET usage_count = usage_count + 1, updated_at=:now
                WHERE id=:id
                  AND is_active=:yes
                  AND (expiry_date IS NULL OR expiry_date >= :now)
                  AND (usage_limit IS NULL OR usage_count < usage_limit)
                RETURNING {COUPON_COLS}
            """), {"id": coupon.id, "now": now, "yes": True}))
            row = row.mappings().first()

            if row is None:
                current = (await db.execute(
                    text(f"SELECT {COUPON_COLS} FROM coupons WHERE id=:id"),
                    {"id": coupon.id},
                )).mappings().first()
                reason = coupon_refusal(
                    _coupon(current) if current else None, now
                ) or "limit_reached"
                raise CouponConflict(reason)

            updated = _coupon(row)
            dedupe_key = (
                f"{updated.id}:{usage.user_id}"
                if updated.one_per_user else usage.id
            )
            try:
                await db.execute(text("""
                    INSERT INTO coupon_usage (
                        id, coupon_id, user_id, item_kind, item_id, used_at,
                        dedupe_key
                    ) VALUES (:id, :c, :u, :k, :i, :at, :d)
                """), {
                    "id": usage.id,
                    "c": updated.id,
                    "u": usage.user_id,
                    "k": usage.item_ref.kind.value,
                    "i": usage.item_ref.id,
                    "at": usage.used_at,
                    "d": dedupe_key,
                })
            except IntegrityError as e:
                # leaving the block rolls the increment back as well
                raise CouponConflict("already_used") from e
        return updated

    # --------------------------------------------------------------------------
    # Capacity
    # --------------------------------------------------------------------------

    async def put_capacity_item(
        self, item_id: str, capacity: int
    ) -> CapacityItem:
        async with self._tx() as db:
            await db.execute(text("""
                INSERT INTO capacity_items (id, capacity_remaining)
                VALUES (:id, :cap)
                ON CONFLICT (id) DO UPDATE
                SET capacity_remaining=EXCLUDED.capacity_remaining
            """), {"id": item_id, "cap": capacity})
        return CapacityItem(id=item_id, capacity_remaining=capacity)

    async def get_capacity_item(self, item_id: str) -> Optional[CapacityItem]:
        async with self._tx() as db:
            row = (await db.execute(text("""
                SELECT id, capacity_remaining FROM capacity_items WHERE id=:id
            """), {"id": item_id})).first()
        if row is None:
            return None
        return CapacityItem(id=row[0], capacity_remaining=int(row[1]))

    async def list_capacity_items(self) -> List[CapacityItem]:
        async with self._tx() as db:
            rows = (await db.execute(text("""
                SELECT id, capacity_remaining FROM capacity_items ORDER BY id
            """))).all()
        return [CapacityItem(id=r[0], capacity_remaining=int(r[1]))
                for r in rows]

    async def reserve(
        self, item_id: str, quantity: int, reservation_id: str, now: float
    ) -> Reservation:
        async with self._tx() as db:
            row = (await db.execute(text("""
                UPDATE capacity_items
                SET capacity_remaining = capacity_remaining - :q
                WHERE id=:id AND capacity_remaining >= :q
                RETURNING capacity_remaining
            """), {"id": item_id, "q": quantity})).first()
            if row is None:
                exists = (await db.execute(
                    text("SELECT 1 FROM capacity_items WHERE id=:id"),
                    {"id": item_id},
                )).first()
                if exists is None:
                    raise NotFoundError(f"Unknown capacity item {item_id}")
                raise CapacityExceeded(item_id)

            await db.execute(text("""
                INSERT INTO reservations (id, item_id, quantity, status,
                                          created_at)
                VALUES (:id, :item, :q, 'pending', :now)
            """), {"id": reservation_id, "item": item_id, "q": quantity,
                   "now": now})
        return Reservation(id=reservation_id, item_id=item_id,
                           quantity=quantity, created_at=now)

    async def confirm_reservation(self, reservation_id: str) -> bool:
        async with self._tx() as db:
            row = (await db.execute(text("""
                UPDATE reservations SET status='confirmed'
                WHERE id=:id AND status='pending'
                RETURNING id
            """), {"id": reservation_id})).first()
        return row is not None

    async def release_reservation(self, reservation_id: str) -> bool:
        async with self._tx() as db:
            row = (await db.execute(text("""
                UPDATE reservations SET status='released'
                WHERE id=:id AND status='pending'
                RETURNING item_id, quantity
            """), {"id": reservation_id})).first()
            if row is None:
                return False
            await db.execute(text("""
                UPDATE capacity_items
                SET capacity_remaining = capacity_remaining + :q
                WHERE id=:item
            """), {"item": row[0], "q": int(row[1])})
        return True

    async def get_reservation(
        self, reservation_id: str
    ) -> Optional[Reservation]:
        async with self._tx() as db:
            row = (await db.execute(text("""
                SELECT id, item_id, quantity, status, created_at
                FROM reservations WHERE id=:id
            """), {"id": reservation_id})).mappings().first()
        return _reservation(row) if row else None

    async def list_stale_reservations(
        self, created_before: float, limit: int = 200
    ) -> List[Reservation]:
        async with self._tx() as db:
            rows = (await db.execute(text("""
                SELECT id, item_id, quantity, status, created_at
                FROM reservations
                WHERE status='pending' AND created_at < :before
                ORDER BY created_at
                LIMIT :lim
            """), {"before": created_before, "lim": limit})).mappings().all()
        return [_reservation(r) for r in rows]
