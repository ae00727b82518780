"""
Subscription record store.

Every mutation of a user's subscription row goes through ``apply_transition``
so that it is applied as one atomic read-modify-write: the row is re-read
(locked with SELECT ... FOR UPDATE where the dialect supports it), the
mutation runs, invariants are enforced, and the commit is guarded by the
row's version counter. A concurrent writer bumps the version and makes our
UPDATE match zero rows, which SQLAlchemy reports as StaleDataError; the
transition is then retried against the fresh row.
"""
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app import models
from app.errors import ConcurrentUpdateError, NotFoundError

logger = logging.getLogger(__name__)

STATE_FREE = "free"
STATE_PENDING_PAYMENT = "pending_payment"
STATE_ACTIVE = "active"
STATE_EXPIRED = "expired"
STATE_SUSPENDED = "suspended"

INTERVAL_DAYS = {
    "weekly": 7,
    "monthly": 30,
    "quarterly": 90,
    "half-yearly": 180,
    "yearly": 365,
}
DEFAULT_INTERVAL_DAYS = 30

Mutation = Callable[[models.Subscription], None]
Guard = Callable[[models.Subscription], bool]


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
        if value < minimum:
            raise ValueError
        return value
    except ValueError:
        return default


def auto_renewal_cap() -> int:
    return _int_env("AUTO_RENEWAL_CAP", 1)


def _max_attempts() -> int:
    return _int_env("STORE_MAX_RETRIES", 3, minimum=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_datetime(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if getattr(value, "tzinfo", None):
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def compute_expiry(interval: Optional[str], start: Optional[datetime] = None) -> datetime:
    start = start or utcnow()
    days = INTERVAL_DAYS.get((interval or "").strip().lower(), DEFAULT_INTERVAL_DAYS)
    return start + timedelta(days=days)


def needs_manual_renewal(subscription: models.Subscription) -> bool:
    return (subscription.auto_renewal_count or 0) >= auto_renewal_cap()


def subscription_state(subscription: models.Subscription) -> str:
    if subscription.status == models.STATUS_ACTIVE:
        return STATE_ACTIVE
    if subscription.live_ref and subscription.pending_since is not None:
        return STATE_PENDING_PAYMENT
    if subscription.status == models.STATUS_EXPIRED:
        return STATE_EXPIRED
    if subscription.purchase_date is not None and not subscription.free:
        return STATE_SUSPENDED
    return STATE_FREE


def enforce_invariants(subscription: models.Subscription) -> None:
    if subscription.payment_type == models.PAYMENT_TYPE_ONE_TIME:
        subscription.auto_pay = False
    if (subscription.auto_renewal_count or 0) > auto_renewal_cap():
        subscription.auto_pay = False
    if subscription.status == models.STATUS_ACTIVE and subscription.expire is None:
        raise ValueError(f"Active subscription for user_id={subscription.user_id} has no expiry")


def _new_free_subscription(user_id: int) -> models.Subscription:
    return models.Subscription(
        user_id=user_id,
        free=True,
        status=None,
        auto_pay=False,
        auto_renewal_count=0,
        payment_type=models.PAYMENT_TYPE_UNKNOWN,
    )


def get_or_create_user_subscription(db: Session, user_id: int, commit: bool = True) -> models.Subscription:
    subscription = db.query(models.Subscription).filter(models.Subscription.user_id == user_id).first()
    if subscription:
        return subscription

    if not db.query(models.User.id).filter(models.User.id == user_id).first():
        raise NotFoundError("User not found")

    subscription = _new_free_subscription(user_id)
    db.add(subscription)
    try:
        if commit:
            db.commit()
            db.refresh(subscription)
        else:
            db.flush()
    except IntegrityError:
        # Another request created the row first.
        db.rollback()
        subscription = db.query(models.Subscription).filter(models.Subscription.user_id == user_id).one()
    return subscription


def get_subscription(db: Session, user_id: int) -> models.Subscription:
    return get_or_create_user_subscription(db, user_id)


def _load_for_update(db: Session, user_id: int) -> models.Subscription:
    get_or_create_user_subscription(db, user_id)
    query = (
        db.query(models.Subscription)
        .filter(models.Subscription.user_id == user_id)
        .populate_existing()
    )
    if db.bind is not None and db.bind.dialect.name != "sqlite":
        query = query.with_for_update()
    return query.one()


def apply_transition(
    db: Session,
    user_id: int,
    mutation: Mutation,
    guard: Optional[Guard] = None,
) -> Optional[models.Subscription]:
    """
    Atomically apply ``mutation`` to the user's subscription row.

    ``guard`` is evaluated against the freshly read row inside the same
    transaction; when it returns False nothing is written and None is
    returned. The mutation may add further rows (ledger entries) to the
    session, they commit or roll back together with the subscription.
    Any error raised while applying or committing is re-raised after rollback.
    """
    attempts = _max_attempts()
    for attempt in range(1, attempts + 1):
        subscription = _load_for_update(db, user_id)
        if guard is not None and not guard(subscription):
            db.rollback()
            return None

        try:
            mutation(subscription)
            enforce_invariants(subscription)
            db.commit()
        except StaleDataError:
            db.rollback()
            logger.warning("subscription_version_conflict user_id=%s attempt=%s", user_id, attempt)
            continue
        except Exception:
            db.rollback()
            raise

        db.refresh(subscription)
        return subscription

    raise ConcurrentUpdateError("Subscription is being updated concurrently. Please retry.")


def find_by_live_ref(db: Session, ref_id: str, kind: Optional[str] = None) -> Optional[models.Subscription]:
    ref_id = (ref_id or "").strip()
    if not ref_id:
        return None
    query = db.query(models.Subscription).filter(models.Subscription.gateway_ref_id == ref_id)
    if kind:
        query = query.filter(models.Subscription.gateway_ref_kind == kind)
    return query.first()


def find_expiring_between(
    db: Session,
    start: datetime,
    end: datetime,
    include_expired: bool = False,
) -> list[models.Subscription]:
    query = db.query(models.Subscription).filter(
        models.Subscription.expire.isnot(None),
        models.Subscription.expire >= start,
        models.Subscription.expire <= end,
    )
    if not include_expired:
        query = query.filter(models.Subscription.status == models.STATUS_ACTIVE)
    return query.order_by(models.Subscription.expire.asc(), models.Subscription.id.asc()).all()


def backfill_missing_subscriptions(db: Session) -> int:
    existing_ids = {user_id for (user_id,) in db.query(models.Subscription.user_id).all()}
    user_ids = [user_id for (user_id,) in db.query(models.User.id).all()]

    created = 0
    for user_id in user_ids:
        if user_id in existing_ids:
            continue
        db.add(_new_free_subscription(user_id))
        created += 1

    if created > 0:
        db.commit()
    return created
