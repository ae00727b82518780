import logging
import os
import threading
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from app import models
from app.database import SessionLocal
from app.errors import BillingError
from app.notifications import NotificationOutbox, expired_email, get_outbox
from app.subscriptions import apply_transition, utcnow

logger = logging.getLogger(__name__)

SUBSCRIPTION_SWEEPS_ENABLED = str(os.getenv("SUBSCRIPTION_SWEEPS_ENABLED", "true")).strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int, minimum: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


SUBSCRIPTION_SWEEP_INTERVAL_SECONDS = _int_env("SUBSCRIPTION_SWEEP_INTERVAL_SECONDS", 3600, 60)


def abandoned_grace_period() -> timedelta:
    return timedelta(minutes=_int_env("ABANDONED_SUBSCRIPTION_GRACE_MINUTES", 60, 0))


def _is_expired_without_renewal(now: datetime):
    def check(subscription: models.Subscription) -> bool:
        return (
            subscription.status == models.STATUS_ACTIVE
            and subscription.expire is not None
            and subscription.expire < now
            and not subscription.auto_pay
        )

    return check


def expire_lapsed_subscriptions(
    db: Session,
    now: Optional[datetime] = None,
    outbox: Optional[NotificationOutbox] = None,
) -> int:
    """Move active records past their expiry with no auto-renewal to expired. Returns the number moved."""
    now = now or utcnow()
    outbox = outbox or get_outbox()
    candidate_ids = [
        user_id
        for (user_id,) in db.query(models.Subscription.user_id)
        .filter(
            models.Subscription.status == models.STATUS_ACTIVE,
            models.Subscription.expire.isnot(None),
            models.Subscription.expire < now,
            models.Subscription.auto_pay.is_(False),
        )
        .order_by(models.Subscription.user_id.asc())
        .all()
    ]

    def expire(subscription: models.Subscription) -> None:
        subscription.status = models.STATUS_EXPIRED
        subscription.auto_renewal_count = 0
        subscription.auto_pay = False

    expired = 0
    for user_id in candidate_ids:
        try:
            subscription = apply_transition(db, user_id, expire, guard=_is_expired_without_renewal(now))
        except BillingError:
            logger.warning("expiry_sweep_skipped user_id=%s", user_id, exc_info=True)
            continue
        if subscription is None:
            continue
        expired += 1
        logger.info("subscription_expired user_id=%s expire=%s", user_id, subscription.expire)
        outbox.enqueue(
            expired_email(
                subscription.user,
                subscription.plan.title if subscription.plan else None,
                subscription.expire,
            )
        )
    return expired


def _is_abandoned(cutoff: datetime):
    def check(subscription: models.Subscription) -> bool:
        return (
            subscription.gateway_ref_id is not None
            and subscription.purchase_date is None
            and subscription.expire is None
            and (subscription.pending_since is None or subscription.pending_since <= cutoff)
        )

    return check


def cleanup_abandoned_subscriptions(db: Session, now: Optional[datetime] = None) -> int:
    """Clear live references whose checkout never completed. Returns the number cleared."""
    now = now or utcnow()
    cutoff = now - abandoned_grace_period()
    is_abandoned = _is_abandoned(cutoff)
    candidate_ids = [
        user_id
        for (user_id,) in db.query(models.Subscription.user_id)
        .filter(
            models.Subscription.gateway_ref_id.isnot(None),
            models.Subscription.purchase_date.is_(None),
            models.Subscription.expire.is_(None),
        )
        .order_by(models.Subscription.user_id.asc())
        .all()
    ]

    def clear(subscription: models.Subscription) -> None:
        subscription.live_ref = None
        subscription.pending_since = None
        subscription.pending_plan_id = None
        subscription.plan_id = None
        subscription.gateway = None
        subscription.payment_type = models.PAYMENT_TYPE_UNKNOWN
        subscription.auto_pay = False

    cleared = 0
    for user_id in candidate_ids:
        try:
            # The guard re-reads the row, so a capture that landed after the scan wins.
            subscription = apply_transition(db, user_id, clear, guard=is_abandoned)
        except BillingError:
            logger.warning("abandoned_cleanup_skipped user_id=%s", user_id, exc_info=True)
            continue
        if subscription is None:
            continue
        cleared += 1
        logger.info("abandoned_checkout_cleared user_id=%s", user_id)
    return cleared


def run_subscription_sweeps(now: Optional[datetime] = None) -> dict[str, Any]:
    db = SessionLocal()
    try:
        expired = expire_lapsed_subscriptions(db, now=now)
        cleared = cleanup_abandoned_subscriptions(db, now=now)
    finally:
        db.close()
    return {"expired": expired, "abandoned_cleared": cleared}


class SubscriptionSweepScheduler:
    def __init__(self) -> None:
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if not SUBSCRIPTION_SWEEPS_ENABLED:
            logger.info("Subscription sweeps: disabled (SUBSCRIPTION_SWEEPS_ENABLED=false)")
            return
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="subscription-sweeps",
            daemon=True,
        )
        self._thread.start()
        logger.info("Subscription sweeps: started (interval=%ss)", SUBSCRIPTION_SWEEP_INTERVAL_SECONDS)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                result = run_subscription_sweeps()
                if result["expired"] or result["abandoned_cleared"]:
                    logger.info("Subscription sweep result: %s", result)
            except Exception:
                logger.exception("Subscription sweep loop error")
            self._stop_event.wait(SUBSCRIPTION_SWEEP_INTERVAL_SECONDS)


_scheduler = SubscriptionSweepScheduler()


def start_subscription_sweep_scheduler() -> None:
    _scheduler.start()


def stop_subscription_sweep_scheduler() -> None:
    _scheduler.stop()
