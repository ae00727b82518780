"""
Inbound Razorpay events.

Webhooks arrive at least once and in no particular order, so every handler is
written to be replayable:

- captured payments are keyed on the gateway payment id; the ledger row and
  the subscription mutation commit together, and a unique-constraint hit on
  the ledger means the event was already applied
- failed payments only ever append to the ledger, they never touch access
- subscription lifecycle events act only while the subscription id is still
  the user's live reference, so events for a replaced or cancelled
  subscription are dropped

Business-level failures (unresolvable user or plan, gateway lookups failing)
are logged and acknowledged; only signature and parse errors reject the
delivery.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import ledger, models, plans
from app.errors import GatewayError, NotFoundError, ReconciliationAmbiguity, SignatureError, ValidationError
from app.notifications import NotificationOutbox, welcome_email
from app.razorpay_client import (
    RazorpayClient,
    normalize_currency,
    timestamp_to_datetime,
    verify_webhook_signature,
    webhook_secret,
)
from app.subscriptions import apply_transition, compute_expiry, find_by_live_ref, utcnow

logger = logging.getLogger(__name__)

EVENT_PAYMENT_CAPTURED = "payment.captured"
EVENT_PAYMENT_FAILED = "payment.failed"
EVENT_ORDER_PAID = "order.paid"
EVENT_SUBSCRIPTION_ACTIVATED = "subscription.activated"
EVENT_SUBSCRIPTION_UPDATED = "subscription.updated"
EVENT_SUBSCRIPTION_CANCELLED = "subscription.cancelled"
EVENT_SUBSCRIPTION_PAUSED = "subscription.paused"
EVENT_SUBSCRIPTION_RESUMED = "subscription.resumed"

TERMINAL_GATEWAY_STATUSES = {"cancelled", "completed", "expired", "halted"}


@dataclass(frozen=True)
class EventOutcome:
    status: str
    reason: Optional[str] = None
    idempotent: bool = False
    user_id: Optional[int] = None

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": self.status}
        if self.reason:
            body["reason"] = self.reason
        if self.idempotent:
            body["idempotent"] = True
        return body


def _ok(user_id: Optional[int] = None, idempotent: bool = False) -> EventOutcome:
    return EventOutcome(status="ok", idempotent=idempotent, user_id=user_id)


def _ignored(reason: str) -> EventOutcome:
    return EventOutcome(status="ignored", reason=reason)


def verify_and_parse(body: bytes, provided_signature: str) -> dict[str, Any]:
    secret = webhook_secret()
    if secret:
        if not (provided_signature or "").strip():
            raise SignatureError("Missing webhook signature.")
        if not verify_webhook_signature(body, provided_signature, secret):
            raise SignatureError("Invalid webhook signature.")
    else:
        logger.warning("RAZORPAY_WEBHOOK_SECRET is not set; accepting webhook without signature verification")

    try:
        event_payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("Invalid webhook payload.")
    if not isinstance(event_payload, dict):
        raise ValidationError("Invalid webhook payload.")
    return event_payload


def _entity(event_payload: dict[str, Any], key: str) -> dict[str, Any]:
    container = (event_payload.get("payload") or {}).get(key) or {}
    entity = container.get("entity") if isinstance(container, dict) else None
    return entity if isinstance(entity, dict) else {}


def _text(value: Any) -> str:
    return str(value or "").strip()


def _amount(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _user_id_from_notes(notes: Any) -> Optional[int]:
    if not isinstance(notes, dict):
        return None
    try:
        return int(_text(notes.get("user_id")))
    except ValueError:
        return None


def _resolve_user(
    db: Session,
    record: Optional[models.Subscription],
    payment: dict[str, Any],
    fetch_gateway_notes: Optional[Callable[[], Optional[dict[str, Any]]]] = None,
) -> Optional[models.User]:
    if record is not None:
        return record.user

    notes_sources: list[Callable[[], Any]] = [lambda: payment.get("notes")]
    if fetch_gateway_notes is not None:
        notes_sources.append(fetch_gateway_notes)
    for load_notes in notes_sources:
        user_id = _user_id_from_notes(load_notes())
        if user_id is not None:
            user = db.query(models.User).filter(models.User.id == user_id).first()
            if user:
                return user

    email = _text(payment.get("email")).lower()
    if email:
        return db.query(models.User).filter(func.lower(models.User.email) == email).first()
    return None


def _memoized(loader: Callable[[], dict[str, Any]]) -> Callable[[], Optional[dict[str, Any]]]:
    cache: dict[str, dict[str, Any]] = {}

    def load_notes() -> Optional[dict[str, Any]]:
        if "value" not in cache:
            cache["value"] = loader()
        return cache["value"].get("notes")

    return load_notes


def process_captured_payment(
    db: Session,
    client: RazorpayClient,
    payment: dict[str, Any],
    outbox: NotificationOutbox,
    expected_user_id: Optional[int] = None,
) -> EventOutcome:
    """Apply one captured payment. Shared by the webhook and checkout confirmation."""
    payment_id = _text(payment.get("id"))
    if not payment_id:
        return _ignored("missing_payment_id")

    if ledger.payment_exists(db, models.GATEWAY_RAZORPAY, payment_id):
        logger.info("payment_capture_duplicate payment_id=%s", payment_id)
        return _ok(idempotent=True)

    subscription_id = _text(payment.get("subscription_id"))
    if subscription_id:
        return _capture_recurring(db, client, payment, subscription_id, outbox, expected_user_id)

    order_id = _text(payment.get("order_id"))
    if order_id:
        return _capture_order(db, client, payment, order_id, outbox, expected_user_id)

    raise ReconciliationAmbiguity(f"Captured payment {payment_id} carries no order or subscription id", reason="missing_correlation_id")


def _checkout_plan_id(record: Optional[models.Subscription]) -> Optional[int]:
    if record is None:
        return None
    return record.pending_plan_id or record.plan_id


def _check_expected_user(user: models.User, expected_user_id: Optional[int]) -> None:
    if expected_user_id is not None and user.id != expected_user_id:
        raise NotFoundError("Order not found")


def _capture_order(
    db: Session,
    client: RazorpayClient,
    payment: dict[str, Any],
    order_id: str,
    outbox: NotificationOutbox,
    expected_user_id: Optional[int],
) -> EventOutcome:
    payment_id = _text(payment.get("id"))
    record = find_by_live_ref(db, order_id, kind=models.PAYMENT_TYPE_ONE_TIME)
    order_notes = _memoized(lambda: client.fetch_order(order_id))

    user = _resolve_user(db, record, payment, order_notes)
    if user is None:
        raise ReconciliationAmbiguity(f"No user for captured payment {payment_id} order {order_id}", reason="user_not_found")
    _check_expected_user(user, expected_user_id)

    plan = plans.resolve_plan(
        db,
        ref_plan_id=_checkout_plan_id(record),
        payment_notes=payment.get("notes"),
        fetch_gateway_notes=order_notes,
        amount_paise=_amount(payment.get("amount")),
        description=_text(payment.get("description")),
    ).unwrap()

    now = utcnow()
    purchase_date = timestamp_to_datetime(payment.get("created_at")) or now

    def activate(subscription: models.Subscription) -> None:
        start = now
        if subscription.status == models.STATUS_ACTIVE and subscription.expire and subscription.expire > now:
            start = subscription.expire
        subscription.plan_id = plan.id
        subscription.status = models.STATUS_ACTIVE
        subscription.free = False
        subscription.gateway = models.GATEWAY_RAZORPAY
        subscription.payment_type = models.PAYMENT_TYPE_ONE_TIME
        subscription.purchase_date = purchase_date
        subscription.start_date = now
        subscription.expire = compute_expiry(plan.interval, start)
        subscription.auto_pay = False
        subscription.auto_renewal_count = 0
        if subscription.gateway_ref_id == order_id:
            subscription.live_ref = None
            subscription.pending_since = None
            subscription.pending_plan_id = None
        db.add(
            ledger.build_entry(
                user_id=user.id,
                plan_id=plan.id,
                gateway=models.GATEWAY_RAZORPAY,
                gateway_payment_id=payment_id,
                gateway_order_id=order_id,
                amount_paise=_amount(payment.get("amount")),
                currency=normalize_currency(payment.get("currency", "")),
                method=_text(payment.get("method")),
                status=ledger.STATUS_COMPLETED,
                purchase_date=purchase_date,
                expire_at=subscription.expire,
            )
        )

    try:
        subscription = apply_transition(db, user.id, activate)
    except IntegrityError:
        logger.info("payment_capture_duplicate payment_id=%s user_id=%s", payment_id, user.id)
        return _ok(user_id=user.id, idempotent=True)

    logger.info(
        "subscription_activated user_id=%s plan_id=%s payment_type=one-time expire=%s",
        user.id,
        plan.id,
        subscription.expire,
    )
    outbox.enqueue(welcome_email(user, subscription))
    return _ok(user_id=user.id)


def _capture_recurring(
    db: Session,
    client: RazorpayClient,
    payment: dict[str, Any],
    subscription_id: str,
    outbox: NotificationOutbox,
    expected_user_id: Optional[int],
) -> EventOutcome:
    payment_id = _text(payment.get("id"))
    record = find_by_live_ref(db, subscription_id, kind=models.PAYMENT_TYPE_RECURRING)
    gateway_subscription = client.fetch_subscription(subscription_id)

    user = _resolve_user(db, record, payment, lambda: gateway_subscription.get("notes"))
    if user is None:
        raise ReconciliationAmbiguity(
            f"No user for captured payment {payment_id} subscription {subscription_id}",
            reason="user_not_found",
        )
    _check_expected_user(user, expected_user_id)

    plan = plans.resolve_plan(
        db,
        ref_plan_id=_checkout_plan_id(record),
        payment_notes=payment.get("notes"),
        fetch_gateway_notes=lambda: gateway_subscription.get("notes"),
        gateway_plan_id=_text(gateway_subscription.get("plan_id")) or None,
        amount_paise=_amount(payment.get("amount")),
        description=_text(payment.get("description")),
    ).unwrap()

    now = utcnow()
    purchase_date = timestamp_to_datetime(payment.get("created_at")) or now
    cycle_end = timestamp_to_datetime(gateway_subscription.get("current_end"))
    total_count = _amount(gateway_subscription.get("total_count"))
    gateway_live = _text(gateway_subscription.get("status")).lower() not in TERMINAL_GATEWAY_STATUSES
    live_ref = models.GatewayRef(models.PAYMENT_TYPE_RECURRING, subscription_id)
    activated = {"value": False}

    def apply_capture(subscription: models.Subscription) -> None:
        activating = (
            subscription.status != models.STATUS_ACTIVE
            or subscription.pending_since is not None
            or subscription.live_ref != live_ref
        )
        if activating:
            if cycle_end and cycle_end > now:
                expire = cycle_end
            else:
                expire = compute_expiry(plan.interval, now)
            subscription.plan_id = plan.id
            subscription.status = models.STATUS_ACTIVE
            subscription.free = False
            subscription.gateway = models.GATEWAY_RAZORPAY
            subscription.payment_type = models.PAYMENT_TYPE_RECURRING
            subscription.purchase_date = purchase_date
            subscription.start_date = now
            subscription.expire = expire
            subscription.auto_pay = gateway_live and total_count > 1
            subscription.auto_renewal_count = 0
            subscription.live_ref = live_ref if gateway_live else None
            subscription.pending_since = None
            subscription.pending_plan_id = None
            activated["value"] = True
        # Renewal charges on a running subscription only hit the ledger;
        # subscription.updated moves the expiry and the renewal counter.
        db.add(
            ledger.build_entry(
                user_id=user.id,
                plan_id=plan.id,
                gateway=models.GATEWAY_RAZORPAY,
                gateway_payment_id=payment_id,
                gateway_order_id=_text(payment.get("order_id")) or None,
                gateway_subscription_id=subscription_id,
                invoice_id=_text(payment.get("invoice_id")) or None,
                amount_paise=_amount(payment.get("amount")),
                currency=normalize_currency(payment.get("currency", "")),
                method=_text(payment.get("method")),
                status=ledger.STATUS_COMPLETED,
                purchase_date=purchase_date,
                expire_at=cycle_end or subscription.expire,
            )
        )

    try:
        subscription = apply_transition(db, user.id, apply_capture)
    except IntegrityError:
        logger.info("payment_capture_duplicate payment_id=%s user_id=%s", payment_id, user.id)
        return _ok(user_id=user.id, idempotent=True)

    if activated["value"]:
        logger.info(
            "subscription_activated user_id=%s plan_id=%s payment_type=recurring auto_pay=%s expire=%s",
            user.id,
            plan.id,
            subscription.auto_pay,
            subscription.expire,
        )
        outbox.enqueue(welcome_email(user, subscription))
    else:
        logger.info("subscription_renewal_payment user_id=%s payment_id=%s", user.id, payment_id)
    return _ok(user_id=user.id)


def _on_payment_captured(db: Session, client: RazorpayClient, event_payload: dict[str, Any], outbox: NotificationOutbox) -> EventOutcome:
    return process_captured_payment(db, client, _entity(event_payload, "payment"), outbox)


def _on_order_paid(db: Session, client: RazorpayClient, event_payload: dict[str, Any], outbox: NotificationOutbox) -> EventOutcome:
    payment = dict(_entity(event_payload, "payment"))
    order = _entity(event_payload, "order")
    if not payment.get("order_id") and order.get("id"):
        payment["order_id"] = order.get("id")
    if not payment.get("notes") and order.get("notes"):
        payment["notes"] = order.get("notes")
    return process_captured_payment(db, client, payment, outbox)


def _on_payment_failed(db: Session, client: RazorpayClient, event_payload: dict[str, Any], outbox: NotificationOutbox) -> EventOutcome:
    payment = _entity(event_payload, "payment")
    payment_id = _text(payment.get("id"))
    if not payment_id:
        return _ignored("missing_payment_id")
    if ledger.payment_exists(db, models.GATEWAY_RAZORPAY, payment_id, status=ledger.STATUS_FAILED):
        return _ok(idempotent=True)

    order_id = _text(payment.get("order_id"))
    subscription_id = _text(payment.get("subscription_id"))
    record = find_by_live_ref(db, subscription_id or order_id)
    user = _resolve_user(db, record, payment)
    if user is None:
        logger.warning("payment_failed_unattributed payment_id=%s", payment_id)
        return _ignored("user_not_found")

    entry = ledger.record_payment(
        db,
        user_id=user.id,
        gateway=models.GATEWAY_RAZORPAY,
        gateway_payment_id=payment_id,
        gateway_order_id=order_id or None,
        gateway_subscription_id=subscription_id or None,
        amount_paise=_amount(payment.get("amount")),
        currency=normalize_currency(payment.get("currency", "")),
        method=_text(payment.get("method")),
        status=ledger.STATUS_FAILED,
        purchase_date=timestamp_to_datetime(payment.get("created_at")) or utcnow(),
        failure_reason=_text(payment.get("error_reason") or payment.get("error_code")) or "payment_failed",
        failure_description=_text(payment.get("error_description")) or None,
    )
    logger.info("payment_failed_recorded user_id=%s payment_id=%s", user.id, payment_id)
    return _ok(user_id=user.id, idempotent=entry is None)


def _lifecycle_target(event_payload: dict[str, Any], db: Session) -> tuple[Optional[models.Subscription], models.GatewayRef]:
    subscription_id = _text(_entity(event_payload, "subscription").get("id"))
    ref = models.GatewayRef(models.PAYMENT_TYPE_RECURRING, subscription_id)
    if not subscription_id:
        return None, ref
    return find_by_live_ref(db, subscription_id, kind=models.PAYMENT_TYPE_RECURRING), ref


def _on_subscription_cancelled(db: Session, client: RazorpayClient, event_payload: dict[str, Any], outbox: NotificationOutbox) -> EventOutcome:
    record, ref = _lifecycle_target(event_payload, db)
    if record is None:
        return _ignored("unknown_subscription")

    def cancel(subscription: models.Subscription) -> None:
        subscription.plan_id = None
        subscription.status = None
        subscription.gateway = None
        subscription.expire = None
        subscription.auto_pay = False
        subscription.auto_renewal_count = 0
        subscription.free = False
        subscription.live_ref = None
        subscription.pending_since = None
        subscription.pending_plan_id = None

    result = apply_transition(db, record.user_id, cancel, guard=lambda s: s.live_ref == ref)
    if result is None:
        return _ignored("stale_subscription")
    logger.info("subscription_cancelled_by_gateway user_id=%s subscription_id=%s", record.user_id, ref.id)
    return _ok(user_id=record.user_id)


def _set_auto_pay(value: bool, event_name: str) -> Callable[..., EventOutcome]:
    def handler(db: Session, client: RazorpayClient, event_payload: dict[str, Any], outbox: NotificationOutbox) -> EventOutcome:
        record, ref = _lifecycle_target(event_payload, db)
        if record is None:
            return _ignored("unknown_subscription")

        def mutate(subscription: models.Subscription) -> None:
            subscription.auto_pay = value

        result = apply_transition(
            db,
            record.user_id,
            mutate,
            guard=lambda s: s.live_ref == ref and s.status == models.STATUS_ACTIVE,
        )
        if result is None:
            return _ignored("stale_subscription")
        logger.info("%s user_id=%s auto_pay=%s", event_name, record.user_id, result.auto_pay)
        return _ok(user_id=record.user_id)

    return handler


def _on_subscription_updated(db: Session, client: RazorpayClient, event_payload: dict[str, Any], outbox: NotificationOutbox) -> EventOutcome:
    record, ref = _lifecycle_target(event_payload, db)
    if record is None:
        return _ignored("unknown_subscription")
    new_end = timestamp_to_datetime(_entity(event_payload, "subscription").get("current_end"))
    if new_end is None:
        return _ignored("missing_cycle_end")

    renewed = {"value": False}

    def renew(subscription: models.Subscription) -> None:
        # A cycle end we already hold (or an older one) is a redelivery.
        if subscription.expire is not None and new_end <= subscription.expire:
            return
        subscription.auto_renewal_count = (subscription.auto_renewal_count or 0) + 1
        subscription.expire = new_end
        subscription.status = models.STATUS_ACTIVE
        renewed["value"] = True

    result = apply_transition(db, record.user_id, renew, guard=lambda s: s.live_ref == ref)
    if result is None:
        return _ignored("stale_subscription")
    if not renewed["value"]:
        return _ok(user_id=record.user_id, idempotent=True)
    logger.info(
        "subscription_renewed user_id=%s auto_renewal_count=%s auto_pay=%s expire=%s",
        record.user_id,
        result.auto_renewal_count,
        result.auto_pay,
        result.expire,
    )
    return _ok(user_id=record.user_id)


def _on_subscription_activated(db: Session, client: RazorpayClient, event_payload: dict[str, Any], outbox: NotificationOutbox) -> EventOutcome:
    logger.info("subscription_activated_event subscription_id=%s", _text(_entity(event_payload, "subscription").get("id")))
    return _ok()


_HANDLERS: dict[str, Callable[..., EventOutcome]] = {
    EVENT_PAYMENT_CAPTURED: _on_payment_captured,
    EVENT_ORDER_PAID: _on_order_paid,
    EVENT_PAYMENT_FAILED: _on_payment_failed,
    EVENT_SUBSCRIPTION_CANCELLED: _on_subscription_cancelled,
    EVENT_SUBSCRIPTION_PAUSED: _set_auto_pay(False, "subscription_paused"),
    EVENT_SUBSCRIPTION_RESUMED: _set_auto_pay(True, "subscription_resumed"),
    EVENT_SUBSCRIPTION_UPDATED: _on_subscription_updated,
    EVENT_SUBSCRIPTION_ACTIVATED: _on_subscription_activated,
}


def handle_event(
    db: Session,
    client: RazorpayClient,
    event_payload: dict[str, Any],
    outbox: NotificationOutbox,
) -> EventOutcome:
    event_name = _text(event_payload.get("event"))
    handler = _HANDLERS.get(event_name)
    if handler is None:
        logger.info("webhook_event_unhandled event=%s", event_name)
        return _ignored("unhandled_event")

    try:
        return handler(db, client, event_payload, outbox)
    except ReconciliationAmbiguity as exc:
        db.rollback()
        logger.error("reconciliation_ambiguity event=%s reason=%s detail=%s", event_name, exc.reason, exc.detail)
        return _ignored(exc.reason)
    except GatewayError as exc:
        db.rollback()
        logger.warning("webhook_gateway_error event=%s detail=%s", event_name, exc.detail, exc_info=True)
        return _ignored("gateway_error")
    except NotFoundError as exc:
        db.rollback()
        logger.warning("webhook_not_found event=%s detail=%s", event_name, exc.detail)
        return _ignored("not_found")
