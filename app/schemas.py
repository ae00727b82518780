from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime


class PlanCreate(BaseModel):
    title: str
    description: Optional[str] = ""
    amount_paise: int
    interval: str
    currency: Optional[str] = None
    is_active: bool = True


class PlanUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class PlanResponse(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    amount_paise: int
    currency: str
    interval: str
    gateway_plan_id: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True


class SubscribeRequest(BaseModel):
    plan_id: Optional[int] = None
    payment_type: str = "one-time"
    gateway: str = "razorpay"


class ManualRenewRequest(BaseModel):
    plan_id: Optional[int] = None
    payment_type: str = "one-time"


class CheckoutResponse(BaseModel):
    gateway: str
    key_id: str
    payment_type: str
    plan_id: int
    amount_paise: int
    currency: str
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class SubscriptionStatusResponse(BaseModel):
    state: str
    status: Optional[str] = None
    free: bool
    plan_id: Optional[int] = None
    plan_title: Optional[str] = None
    plan_interval: Optional[str] = None
    pending_plan_id: Optional[int] = None
    gateway: Optional[str] = None
    payment_type: str
    purchase_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    expire: Optional[datetime] = None
    auto_pay: bool
    auto_renewal_count: int
    can_auto_renew: bool
    needs_manual_renewal: bool
    pending_ref_kind: Optional[str] = None
    pending_ref_id: Optional[str] = None


class PaymentResponse(BaseModel):
    id: int
    user_id: int
    plan_id: Optional[int] = None
    amount_paise: int
    currency: str
    method: str
    gateway: str
    gateway_payment_id: str
    gateway_order_id: Optional[str] = None
    gateway_subscription_id: Optional[str] = None
    status: str
    purchase_date: datetime
    expire_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    failure_description: Optional[str] = None

    class Config:
        from_attributes = True


class RevenueSummaryRow(BaseModel):
    currency: str
    total_amount_paise: int
    payment_count: int


class ChangeUserPlanRequest(BaseModel):
    plan_id: int
    manual_amount_paise: Optional[int] = None


class FreeAccessRequest(BaseModel):
    days: int
    plan_id: Optional[int] = None


class ExtendPlanRequest(BaseModel):
    days: int


class ExpiringUser(BaseModel):
    user_id: int
    email: str
    full_name: Optional[str] = None
    plan_id: Optional[int] = None
    plan_title: Optional[str] = None
    expire: datetime
    auto_pay: bool


class ExpiringGroup(BaseModel):
    date: str
    users: List[ExpiringUser]


class SweepResult(BaseModel):
    expired: int
    abandoned_cleared: int
