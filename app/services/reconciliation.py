"""
User- and admin-initiated subscription changes.

Gateway calls happen before the local transition, so a gateway failure
leaves the record untouched. The exception is retiring a recurring object
that is being replaced. The record lets go of it before the best-effort
cancel, and a failed cancel puts the reference back.
"""
import logging
import secrets
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from app import ledger, models, plans
from app.errors import GatewayError, NotFoundError, SignatureError, ValidationError
from app.notifications import NotificationOutbox, welcome_email
from app.razorpay_client import (
    RazorpayClient,
    looks_like_razorpay_id,
    recurring_total_count,
    verify_checkout_signature,
)
from app.services import gateway_events
from app.subscriptions import (
    apply_transition,
    auto_renewal_cap,
    compute_expiry,
    find_expiring_between,
    get_subscription,
    needs_manual_renewal,
    subscription_state,
    utcnow,
)

logger = logging.getLogger(__name__)

VALID_PAYMENT_TYPES = (models.PAYMENT_TYPE_ONE_TIME, models.PAYMENT_TYPE_RECURRING)


def _normalize_payment_type(raw_payment_type: str) -> str:
    payment_type = (raw_payment_type or "").strip().lower()
    if payment_type not in VALID_PAYMENT_TYPES:
        raise ValidationError("Invalid payment type. Use 'one-time' or 'recurring'.")
    return payment_type


def _get_user(db: Session, user_id: int) -> models.User:
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise NotFoundError("User not found")
    return user


def _get_purchasable_plan(db: Session, plan_id: Optional[int]) -> models.Plan:
    if not plan_id:
        raise ValidationError("Plan id is required.")
    plan = plans.get_plan(db, plan_id)
    if not plan.is_active:
        raise ValidationError("This plan is not available for purchase.")
    return plan


def _create_receipt(user_id: int) -> str:
    return f"examprep_{user_id}_{secrets.token_hex(8)}"[:40]


def _cancel_gateway_subscription(client: RazorpayClient, user_id: int, ref: Optional[models.GatewayRef]) -> bool:
    if not ref or ref.kind != models.PAYMENT_TYPE_RECURRING:
        return False
    try:
        client.cancel_subscription(ref.id)
    except GatewayError:
        logger.warning(
            "Best-effort cancel failed user_id=%s subscription_id=%s",
            user_id,
            ref.id,
            exc_info=True,
        )
        return False
    return True


def _cancel_recurring_best_effort(client: RazorpayClient, subscription: models.Subscription) -> bool:
    return _cancel_gateway_subscription(client, subscription.user_id, subscription.live_ref)


def _retire_recurring_ref(db: Session, client: RazorpayClient, current: models.Subscription) -> bool:
    """
    Detach the live recurring object from the record, then cancel it at the gateway.

    The record stops matching the object before the cancel is sent, so the
    gateway's subscription.cancelled event finds nothing to clear. When the
    cancel fails the object is still chargeable and is attached again,
    unless something else took its place meanwhile. Returns True when the
    gateway confirmed the cancel.
    """
    ref = current.live_ref
    if not ref or ref.kind != models.PAYMENT_TYPE_RECURRING:
        return False
    snapshot = (bool(current.auto_pay), current.pending_since, current.pending_plan_id)

    def detach(subscription: models.Subscription) -> None:
        subscription.live_ref = None
        subscription.auto_pay = False
        subscription.pending_since = None
        subscription.pending_plan_id = None

    if apply_transition(db, current.user_id, detach, guard=lambda s: s.live_ref == ref) is None:
        return False
    if _cancel_gateway_subscription(client, current.user_id, ref):
        return True

    def reattach(subscription: models.Subscription) -> None:
        subscription.live_ref = ref
        subscription.auto_pay, subscription.pending_since, subscription.pending_plan_id = snapshot

    apply_transition(db, current.user_id, reattach, guard=lambda s: s.live_ref is None)
    return False


def _start_checkout(
    db: Session,
    client: RazorpayClient,
    user: models.User,
    plan: models.Plan,
    payment_type: str,
    customer_id: Optional[str],
    allow_active: bool,
) -> dict[str, Any]:
    """
    Create the gateway checkout object, then point the record at it.

    An active record keeps its paid plan and payment type until the new
    checkout is captured; the plan being bought waits in pending_plan_id.
    """
    if payment_type == models.PAYMENT_TYPE_RECURRING and not plan.gateway_plan_id:
        raise ValidationError("This plan does not support recurring billing.")

    if not customer_id:
        customer = client.create_customer(name=user.full_name or user.email, email=user.email, contact=user.phone)
        customer_id = str(customer.get("id") or "").strip() or None

    notes = {"plan_id": str(plan.id), "user_id": str(user.id), "payment_type": payment_type}
    checkout: dict[str, Any] = {
        "gateway": models.GATEWAY_RAZORPAY,
        "key_id": client.key_id,
        "payment_type": payment_type,
        "plan_id": plan.id,
        "amount_paise": plan.amount_paise,
        "currency": plan.currency,
        "order_id": None,
        "subscription_id": None,
    }
    if payment_type == models.PAYMENT_TYPE_ONE_TIME:
        order = client.create_order(plan.amount_paise, plan.currency, _create_receipt(user.id), notes)
        ref_id = str(order.get("id") or "").strip()
        if not looks_like_razorpay_id(ref_id, "order"):
            raise GatewayError("Razorpay did not return a valid order id.")
        checkout["order_id"] = ref_id
    else:
        gateway_subscription = client.create_subscription(
            plan_id=plan.gateway_plan_id,
            total_count=recurring_total_count(),
            customer_id=customer_id,
            notes=notes,
        )
        ref_id = str(gateway_subscription.get("id") or "").strip()
        if not looks_like_razorpay_id(ref_id, "sub"):
            raise GatewayError("Razorpay did not return a valid subscription id.")
        checkout["subscription_id"] = ref_id

    ref = models.GatewayRef(payment_type, ref_id)
    now = utcnow()

    def begin_pending(subscription: models.Subscription) -> None:
        if subscription.status != models.STATUS_ACTIVE:
            subscription.purchase_date = None
            subscription.start_date = None
            subscription.expire = None
            subscription.plan_id = plan.id
            subscription.gateway = models.GATEWAY_RAZORPAY
            subscription.payment_type = payment_type
        subscription.pending_plan_id = plan.id
        subscription.auto_pay = False
        subscription.live_ref = ref
        subscription.pending_since = now
        if customer_id:
            subscription.gateway_customer_id = customer_id

    guard = None if allow_active else (lambda s: s.status != models.STATUS_ACTIVE)
    subscription = apply_transition(db, user.id, begin_pending, guard=guard)
    if subscription is None:
        raise ValidationError("You already have an active subscription. Use manual renewal to extend it.")

    logger.info(
        "checkout_started user_id=%s plan_id=%s payment_type=%s ref_id=%s",
        user.id,
        plan.id,
        payment_type,
        ref_id,
    )
    return checkout


def subscribe(
    db: Session,
    client: RazorpayClient,
    user: models.User,
    plan_id: Optional[int],
    payment_type: str,
    gateway: str = models.GATEWAY_RAZORPAY,
) -> dict[str, Any]:
    if (gateway or "").strip().lower() != models.GATEWAY_RAZORPAY:
        raise ValidationError("Unsupported payment gateway.")
    payment_type = _normalize_payment_type(payment_type)
    plan = _get_purchasable_plan(db, plan_id)

    current = get_subscription(db, user.id)
    if current.status == models.STATUS_ACTIVE:
        raise ValidationError("You already have an active subscription. Use manual renewal to extend it.")

    # A pending recurring object from an earlier attempt must not stay chargeable.
    customer_id = current.gateway_customer_id
    _retire_recurring_ref(db, client, current)
    return _start_checkout(db, client, user, plan, payment_type, customer_id, allow_active=False)


def manual_renew(
    db: Session,
    client: RazorpayClient,
    user: models.User,
    plan_id: Optional[int],
    payment_type: str,
) -> dict[str, Any]:
    payment_type = _normalize_payment_type(payment_type)
    plan = _get_purchasable_plan(db, plan_id)

    current = get_subscription(db, user.id)
    customer_id = current.gateway_customer_id
    _retire_recurring_ref(db, client, current)
    return _start_checkout(db, client, user, plan, payment_type, customer_id, allow_active=True)


def cancel_plan(db: Session, client: RazorpayClient, user: models.User) -> models.Subscription:
    current = get_subscription(db, user.id)
    if current.status != models.STATUS_ACTIVE and not current.live_ref:
        raise NotFoundError("No subscription to cancel.")

    ref = current.live_ref
    if ref and ref.kind == models.PAYMENT_TYPE_RECURRING:
        client.cancel_subscription(ref.id)

    def cancel(subscription: models.Subscription) -> None:
        subscription.plan_id = None
        subscription.status = None
        subscription.gateway = None
        subscription.expire = None
        subscription.auto_pay = False
        subscription.auto_renewal_count = 0
        subscription.live_ref = None
        subscription.pending_since = None
        subscription.pending_plan_id = None

    subscription = apply_transition(db, user.id, cancel)
    logger.info("subscription_cancelled_by_user user_id=%s", user.id)
    return subscription


def _require_active_recurring(subscription: models.Subscription) -> models.GatewayRef:
    ref = subscription.live_ref
    if (
        subscription.status != models.STATUS_ACTIVE
        or not ref
        or ref.kind != models.PAYMENT_TYPE_RECURRING
        or subscription.pending_since is not None
    ):
        raise ValidationError("No active recurring subscription found.")
    return ref


def pause_subscription(db: Session, client: RazorpayClient, user: models.User) -> models.Subscription:
    ref = _require_active_recurring(get_subscription(db, user.id))
    client.pause_subscription(ref.id)

    def pause(subscription: models.Subscription) -> None:
        subscription.auto_pay = False

    subscription = apply_transition(db, user.id, pause, guard=lambda s: s.live_ref == ref)
    if subscription is None:
        raise ValidationError("Subscription changed while pausing. Please retry.")
    logger.info("subscription_paused user_id=%s", user.id)
    return subscription


def resume_subscription(db: Session, client: RazorpayClient, user: models.User) -> models.Subscription:
    current = get_subscription(db, user.id)
    ref = _require_active_recurring(current)
    if (current.auto_renewal_count or 0) > auto_renewal_cap():
        raise ValidationError("Auto-renewal limit reached. Please renew manually.")
    client.resume_subscription(ref.id)

    def resume(subscription: models.Subscription) -> None:
        subscription.auto_pay = True

    subscription = apply_transition(db, user.id, resume, guard=lambda s: s.live_ref == ref)
    if subscription is None:
        raise ValidationError("Subscription changed while resuming. Please retry.")
    logger.info("subscription_resumed user_id=%s auto_pay=%s", user.id, subscription.auto_pay)
    return subscription


def cancel_auto_renewal(db: Session, client: RazorpayClient, user: models.User) -> models.Subscription:
    current = get_subscription(db, user.id)
    cancelled_at_gateway = _retire_recurring_ref(db, client, current)

    def stop_renewal(subscription: models.Subscription) -> None:
        subscription.auto_pay = False
        subscription.auto_renewal_count = 0

    subscription = apply_transition(db, user.id, stop_renewal)
    logger.info(
        "auto_renewal_cancelled user_id=%s gateway_cancelled=%s",
        user.id,
        cancelled_at_gateway,
    )
    return subscription


def subscription_status(db: Session, user: models.User) -> dict[str, Any]:
    subscription = get_subscription(db, user.id)
    plan = subscription.plan
    ref = subscription.live_ref
    return {
        "state": subscription_state(subscription),
        "status": subscription.status,
        "free": bool(subscription.free),
        "plan_id": subscription.plan_id,
        "plan_title": plan.title if plan else None,
        "plan_interval": plan.interval if plan else None,
        "pending_plan_id": subscription.pending_plan_id if subscription.pending_since else None,
        "gateway": subscription.gateway,
        "payment_type": subscription.payment_type,
        "purchase_date": subscription.purchase_date,
        "start_date": subscription.start_date,
        "expire": subscription.expire,
        "auto_pay": bool(subscription.auto_pay),
        "auto_renewal_count": subscription.auto_renewal_count or 0,
        "can_auto_renew": not needs_manual_renewal(subscription),
        "needs_manual_renewal": needs_manual_renewal(subscription),
        "pending_ref_kind": ref.kind if ref and subscription.pending_since else None,
        "pending_ref_id": ref.id if ref and subscription.pending_since else None,
    }


def confirm_payment(
    db: Session,
    client: RazorpayClient,
    user: models.User,
    order_id: str,
    payment_id: str,
    signature: str,
    outbox: NotificationOutbox,
) -> gateway_events.EventOutcome:
    order_id = (order_id or "").strip()
    payment_id = (payment_id or "").strip()
    if not looks_like_razorpay_id(order_id, "order"):
        raise ValidationError("Invalid Razorpay order id format.")
    if not looks_like_razorpay_id(payment_id, "pay"):
        raise ValidationError("Invalid Razorpay payment id format.")
    if not client.configured:
        raise GatewayError("Payment gateway is not configured.")
    if not verify_checkout_signature(order_id, payment_id, signature, client.key_secret):
        raise SignatureError("Invalid payment signature.")

    payment = client.fetch_payment(payment_id)
    if str(payment.get("order_id") or "").strip() != order_id:
        raise ValidationError("Payment does not belong to this order.")
    if str(payment.get("status") or "").strip().lower() != "captured":
        raise ValidationError("Payment is not captured yet. Access activates once the gateway confirms it.")

    return gateway_events.process_captured_payment(db, client, payment, outbox, expected_user_id=user.id)


# Admin operations


def change_user_plan(
    db: Session,
    client: RazorpayClient,
    user_id: int,
    plan_id: int,
    outbox: NotificationOutbox,
    manual_amount_paise: Optional[int] = None,
) -> models.Subscription:
    user = _get_user(db, user_id)
    plan = plans.get_plan(db, plan_id)
    if manual_amount_paise is not None and manual_amount_paise <= 0:
        raise ValidationError("Manual amount must be positive.")

    current = get_subscription(db, user.id)
    _retire_recurring_ref(db, client, current)

    now = utcnow()
    expire = compute_expiry(plan.interval, now)

    def grant(subscription: models.Subscription) -> None:
        subscription.plan_id = plan.id
        subscription.status = models.STATUS_ACTIVE
        subscription.gateway = models.GATEWAY_ADMIN
        subscription.free = False
        subscription.payment_type = models.PAYMENT_TYPE_ONE_TIME
        subscription.auto_pay = False
        subscription.auto_renewal_count = 0
        subscription.purchase_date = now
        subscription.start_date = now
        subscription.expire = expire
        subscription.live_ref = None
        subscription.pending_since = None
        subscription.pending_plan_id = None
        if manual_amount_paise is not None:
            db.add(
                ledger.build_entry(
                    user_id=user.id,
                    plan_id=plan.id,
                    gateway=models.GATEWAY_ADMIN,
                    gateway_payment_id=f"MANUAL_{int(now.timestamp() * 1000)}_{user.id}",
                    amount_paise=manual_amount_paise,
                    currency=plan.currency,
                    method="manual",
                    status=ledger.STATUS_COMPLETED,
                    purchase_date=now,
                    expire_at=expire,
                )
            )

    subscription = apply_transition(db, user.id, grant)
    logger.info(
        "admin_plan_changed user_id=%s plan_id=%s manual_amount_paise=%s",
        user.id,
        plan.id,
        manual_amount_paise,
    )
    outbox.enqueue(welcome_email(user, subscription))
    return subscription


def add_free_access(db: Session, user_id: int, days: int, plan_id: Optional[int] = None) -> models.Subscription:
    if days is None or days <= 0:
        raise ValidationError("Days must be a positive number.")
    user = _get_user(db, user_id)
    plan = plans.get_plan(db, plan_id) if plan_id else None

    now = utcnow()

    def grant(subscription: models.Subscription) -> None:
        if plan is not None:
            subscription.plan_id = plan.id
        subscription.free = True
        subscription.status = models.STATUS_ACTIVE
        subscription.gateway = models.GATEWAY_ADMIN
        subscription.auto_pay = False
        subscription.auto_renewal_count = 0
        subscription.start_date = now
        subscription.expire = now + timedelta(days=days)

    subscription = apply_transition(db, user.id, grant)
    logger.info("admin_free_access_granted user_id=%s days=%s plan_id=%s", user.id, days, subscription.plan_id)
    return subscription


def extend_user_plan(db: Session, user_id: int, days: int) -> models.Subscription:
    if days is None or days <= 0:
        raise ValidationError("Days must be a positive number.")
    user = _get_user(db, user_id)

    now = utcnow()

    def extend(subscription: models.Subscription) -> None:
        subscription.expire = subscription.expire + timedelta(days=days)
        if subscription.expire > now:
            subscription.status = models.STATUS_ACTIVE

    subscription = apply_transition(db, user.id, extend, guard=lambda s: s.expire is not None)
    if subscription is None:
        raise ValidationError("User has no plan to extend.")
    logger.info("admin_plan_extended user_id=%s days=%s expire=%s", user.id, days, subscription.expire)
    return subscription


def suspend_user_plan(db: Session, client: RazorpayClient, user_id: int) -> models.Subscription:
    user = _get_user(db, user_id)
    current = get_subscription(db, user.id)
    free_grant = bool(current.free) and current.gateway == models.GATEWAY_ADMIN
    if not free_grant:
        _cancel_recurring_best_effort(client, current)

    def suspend(subscription: models.Subscription) -> None:
        subscription.free = free_grant
        subscription.plan_id = None
        subscription.status = None
        subscription.gateway = None
        subscription.expire = None
        subscription.auto_pay = False
        subscription.auto_renewal_count = 0
        subscription.live_ref = None
        subscription.pending_since = None
        subscription.pending_plan_id = None

    subscription = apply_transition(db, user.id, suspend)
    logger.info("admin_plan_suspended user_id=%s free_grant=%s", user.id, free_grant)
    return subscription


def users_by_expiry_date(db: Session, days: int) -> list[dict[str, Any]]:
    if days is None or days <= 0:
        raise ValidationError("Days must be a positive number.")
    now = utcnow()
    grouped: dict[str, list[dict[str, Any]]] = {}
    for subscription in find_expiring_between(db, now, now + timedelta(days=days)):
        user = subscription.user
        grouped.setdefault(subscription.expire.date().isoformat(), []).append(
            {
                "user_id": user.id,
                "email": user.email,
                "full_name": user.full_name,
                "plan_id": subscription.plan_id,
                "plan_title": subscription.plan.title if subscription.plan else None,
                "expire": subscription.expire,
                "auto_pay": bool(subscription.auto_pay),
            }
        )
    return [{"date": date, "users": users} for date, users in grouped.items()]
