from typing import NamedTuple, Optional

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base

GATEWAY_RAZORPAY = "razorpay"
GATEWAY_ADMIN = "admin"

PAYMENT_TYPE_ONE_TIME = "one-time"
PAYMENT_TYPE_RECURRING = "recurring"
PAYMENT_TYPE_UNKNOWN = "unknown"

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"


class GatewayRef(NamedTuple):
    """A live correlation id into the gateway: an order (one-time) or a subscription (recurring)."""

    kind: str
    id: str


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    is_admin = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    subscription = relationship("Subscription", back_populates="user", uselist=False)


class Plan(Base):
    __tablename__ = "plans"
    __table_args__ = (UniqueConstraint("title", "interval", name="uq_plans_title_interval"),)

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    amount_paise = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    interval = Column(String(16), nullable=False)  # weekly, monthly, quarterly, half-yearly, yearly
    gateway_plan_id = Column(String, nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)
    gateway = Column(String(16), nullable=True)  # razorpay, admin
    payment_type = Column(String(16), nullable=False, default=PAYMENT_TYPE_UNKNOWN)
    status = Column(String(16), nullable=True)  # active, expired; NULL when not entitled
    free = Column(Boolean, nullable=False, default=True)
    purchase_date = Column(DateTime, nullable=True)
    start_date = Column(DateTime, nullable=True)
    expire = Column(DateTime, nullable=True, index=True)
    auto_pay = Column(Boolean, nullable=False, default=False)
    auto_renewal_count = Column(Integer, nullable=False, default=0)
    gateway_customer_id = Column(String, nullable=True)
    gateway_ref_kind = Column(String(16), nullable=True)
    gateway_ref_id = Column(String, nullable=True, index=True)
    pending_since = Column(DateTime, nullable=True)
    pending_plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)  # plan of the checkout behind live_ref
    version_id = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="subscription")
    plan = relationship("Plan", foreign_keys=[plan_id])

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def live_ref(self) -> Optional[GatewayRef]:
        if not self.gateway_ref_kind or not self.gateway_ref_id:
            return None
        return GatewayRef(self.gateway_ref_kind, self.gateway_ref_id)

    @live_ref.setter
    def live_ref(self, ref: Optional[GatewayRef]) -> None:
        self.gateway_ref_kind = ref.kind if ref else None
        self.gateway_ref_id = ref.id if ref else None


class Payment(Base):
    """Append-only ledger of observed payment attempts."""

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("gateway", "gateway_payment_id", "status", name="uq_payments_gateway_payment_status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)
    amount_paise = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    method = Column(String(32), nullable=False, default="manual")
    gateway = Column(String(16), nullable=False)
    gateway_payment_id = Column(String, nullable=False, index=True)
    gateway_order_id = Column(String, nullable=True)
    gateway_subscription_id = Column(String, nullable=True)
    invoice_id = Column(String, nullable=True)
    status = Column(String(16), nullable=False)  # completed, failed, pending, cancelled
    purchase_date = Column(DateTime, nullable=False)
    expire_at = Column(DateTime, nullable=True)
    failure_reason = Column(String, nullable=True)
    failure_description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User")
    plan = relationship("Plan")
