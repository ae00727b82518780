import calendar
import os
import unittest
from datetime import datetime, timedelta
from unittest.mock import MagicMock

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "unit-test-secret-key-0123456789")
os.environ["SUBSCRIPTION_SWEEPS_ENABLED"] = "false"

from app import models  # noqa: E402
from app.database import Base, SessionLocal, engine  # noqa: E402
from app.razorpay_client import RazorpayClient  # noqa: E402
from app.subscriptions import get_or_create_user_subscription, utcnow  # noqa: E402


class RecordingOutbox:
    def __init__(self):
        self.messages = []

    def enqueue(self, message):
        self.messages.append(message)

    def kinds(self):
        return [message.kind for message in self.messages]


def make_gateway():
    gateway = MagicMock(spec=RazorpayClient)
    gateway.key_id = "rzp_test_key"
    gateway.key_secret = "rzp_test_secret"
    gateway.configured = True
    gateway.create_customer.return_value = {"id": "cust_test1"}
    gateway.create_order.return_value = {"id": "order_abc"}
    gateway.create_subscription.return_value = {"id": "sub_xyz"}
    gateway.create_plan.return_value = {"id": "plan_gw1"}
    gateway.cancel_subscription.return_value = {"id": "sub_xyz", "status": "cancelled"}
    gateway.pause_subscription.return_value = {"id": "sub_xyz", "status": "paused"}
    gateway.resume_subscription.return_value = {"id": "sub_xyz", "status": "active"}
    gateway.fetch_order.return_value = {"id": "order_abc", "notes": {}}
    return gateway


def epoch(value: datetime) -> int:
    return calendar.timegm(value.utctimetuple())


def whole_seconds(value: datetime) -> datetime:
    return value.replace(microsecond=0)


def payment_event(event, payment_id, amount, order_id=None, subscription_id=None, notes=None, email=None, **extra):
    entity = {
        "id": payment_id,
        "entity": "payment",
        "amount": amount,
        "currency": "INR",
        "status": "failed" if event == "payment.failed" else "captured",
        "method": "upi",
        "order_id": order_id,
        "subscription_id": subscription_id,
        "notes": notes or {},
        "email": email,
        "created_at": epoch(utcnow()),
    }
    entity.update(extra)
    return {"event": event, "payload": {"payment": {"entity": entity}}}


def subscription_event(event, subscription_id, current_end=None, **extra):
    entity = {"id": subscription_id, "entity": "subscription", "status": "active"}
    if current_end is not None:
        entity["current_end"] = epoch(current_end)
    entity.update(extra)
    return {"event": event, "payload": {"subscription": {"entity": entity}}}


class BillingTestCase(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(bind=engine)
        Base.metadata.create_all(bind=engine)
        self.db = SessionLocal()
        self.gateway = make_gateway()
        self.outbox = RecordingOutbox()

    def tearDown(self):
        self.db.close()

    def make_user(self, email="student@example.com", full_name="Test Student", is_admin=False):
        user = models.User(email=email, full_name=full_name, is_active=True, is_admin=is_admin)
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        get_or_create_user_subscription(self.db, user.id)
        return user

    def make_plan(self, title="Monthly Pro", amount_paise=49900, interval="monthly", gateway_plan_id="plan_gw1", **fields):
        plan = models.Plan(
            title=title,
            description=fields.pop("description", ""),
            amount_paise=amount_paise,
            currency="INR",
            interval=interval,
            gateway_plan_id=gateway_plan_id,
            is_active=fields.pop("is_active", True),
        )
        self.db.add(plan)
        self.db.commit()
        self.db.refresh(plan)
        return plan

    def set_subscription(self, user, **fields):
        subscription = get_or_create_user_subscription(self.db, user.id)
        for name, value in fields.items():
            setattr(subscription, name, value)
        self.db.commit()
        return subscription

    def reload(self, user):
        self.db.expire_all()
        return self.db.query(models.Subscription).filter(models.Subscription.user_id == user.id).one()

    def payments(self, user=None):
        self.db.expire_all()
        query = self.db.query(models.Payment)
        if user is not None:
            query = query.filter(models.Payment.user_id == user.id)
        return query.order_by(models.Payment.id.asc()).all()

    def make_active(self, user, plan, payment_type=models.PAYMENT_TYPE_RECURRING, ref_id="sub_xyz", days=30, **fields):
        now = utcnow()
        values = dict(
            plan_id=plan.id,
            status=models.STATUS_ACTIVE,
            free=False,
            gateway=models.GATEWAY_RAZORPAY,
            payment_type=payment_type,
            purchase_date=now - timedelta(days=1),
            start_date=now - timedelta(days=1),
            expire=now + timedelta(days=days),
            auto_pay=payment_type == models.PAYMENT_TYPE_RECURRING,
            auto_renewal_count=0,
            gateway_ref_kind=payment_type if ref_id else None,
            gateway_ref_id=ref_id,
            pending_since=None,
        )
        values.update(fields)
        return self.set_subscription(user, **values)
