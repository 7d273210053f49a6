from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Boolean,
    Text,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class PurchaseRow(Base):
    __tablename__ = "purchases"
    id = Column(String, primary_key=True)
    buyer_id = Column(String, nullable=False, index=True)
    buyer_email = Column(String, nullable=True)
    item_kind = Column(String, nullable=False)
    item_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="ZAR")
    # card | coupon
    method = Column(String, nullable=False)

    # pending | paid | failed | cancelled
    status = Column(String, nullable=False, default="pending")
    external_transaction_id = Column(String, nullable=False, unique=True)
    reservation_id = Column(String, nullable=True, index=True)
    coupon_id = Column(String, nullable=True)
    provider_session_id = Column(String, nullable=True)
    ticket_code = Column(String, nullable=True, unique=True)
    created_at = Column(Float, nullable=False)
    settled_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("purchases_status_created_idx", "status", "created_at"),
    )


class CouponRow(Base):
    __tablename__ = "coupons"
    id = Column(String, primary_key=True)
    code = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    # percentage | fixed
    discount_type = Column(String, nullable=False)
    discount_amount = Column(Integer, nullable=False)
    expiry_date = Column(Float, nullable=True)
    usage_limit = Column(Integer, nullable=True)
    one_per_user = Column(Boolean, nullable=False, default=False)
    usage_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)

    __table_args__ = (
        CheckConstraint("usage_count >= 0", name="coupons_usage_nonneg"),
    )


class CouponUsageRow(Base):
    __tablename__ = "coupon_usage"
    id = Column(String, primary_key=True)
    coupon_id = Column(String, ForeignKey("coupons.id"), nullable=False,
                       index=True)
    user_id = Column(String, nullable=False)
    item_kind = Column(String, nullable=False)
    item_id = Column(String, nullable=False)
    used_at = Column(Float, nullable=False)
    # coupon_id:user_id for one-per-user coupons, the row id otherwise
    dedupe_key = Column(String, nullable=False, unique=True)


class CapacityItemRow(Base):
    __tablename__ = "capacity_items"
    id = Column(String, primary_key=True)
    capacity_remaining = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("capacity_remaining >= 0",
                        name="capacity_remaining_nonneg"),
    )


class ReservationRow(Base):
    __tablename__ = "reservations"
    id = Column(String, primary_key=True)
    item_id = Column(String, ForeignKey("capacity_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    # pending | confirmed | released
    status = Column(String, nullable=False, default="pending")
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="reservations_qty_pos"),
        Index("reservations_status_created_idx", "status", "created_at"),
    )


class PaymentCallbackRow(Base):
    __tablename__ = "payment_callbacks"
    event_key = Column(String, primary_key=True)
    external_transaction_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)
    payload = Column(Text, nullable=False)
    received_at = Column(Float, nullable=False)
