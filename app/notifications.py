"""
Outbound notification channel.

State transitions enqueue messages here only after their transaction has
committed. Delivery runs on a small worker pool, so a slow or failing email
provider never blocks or rolls back billing work.
"""
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from app import models
from app.email_service import send_subscription_expired_email, send_welcome_email

logger = logging.getLogger(__name__)

KIND_WELCOME = "welcome"
KIND_EXPIRED = "expired"


@dataclass(frozen=True)
class OutboundEmail:
    kind: str
    user_id: int
    email: str
    full_name: Optional[str] = None
    plan_title: Optional[str] = None
    access_until: Optional[datetime] = None
    auto_pay: bool = False


def welcome_email(user: models.User, subscription: models.Subscription) -> OutboundEmail:
    return OutboundEmail(
        kind=KIND_WELCOME,
        user_id=user.id,
        email=user.email,
        full_name=user.full_name,
        plan_title=subscription.plan.title if subscription.plan else "your plan",
        access_until=subscription.expire,
        auto_pay=bool(subscription.auto_pay),
    )


def expired_email(user: models.User, plan_title: Optional[str], expired_at: Optional[datetime]) -> OutboundEmail:
    return OutboundEmail(
        kind=KIND_EXPIRED,
        user_id=user.id,
        email=user.email,
        full_name=user.full_name,
        plan_title=plan_title,
        access_until=expired_at,
    )


def deliver(message: OutboundEmail) -> bool:
    if not message.email:
        return False
    try:
        if message.kind == KIND_WELCOME:
            return send_welcome_email(
                email=message.email,
                full_name=message.full_name,
                plan_title=message.plan_title or "your plan",
                access_until=message.access_until,
                auto_pay=message.auto_pay,
            )
        if message.kind == KIND_EXPIRED:
            return send_subscription_expired_email(
                email=message.email,
                full_name=message.full_name,
                plan_title=message.plan_title,
                expired_at=message.access_until,
            )
        logger.warning("Unknown notification kind=%s user_id=%s", message.kind, message.user_id)
        return False
    except Exception:
        logger.exception("Failed to deliver notification kind=%s user_id=%s", message.kind, message.user_id)
        return False


class NotificationOutbox:
    def __init__(self, max_workers: int = 2) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notification-outbox")

    def enqueue(self, message: OutboundEmail) -> None:
        try:
            self._executor.submit(deliver, message)
        except RuntimeError:
            # Executor already shut down (process exiting).
            logger.warning("Dropped notification kind=%s user_id=%s during shutdown", message.kind, message.user_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _outbox_workers() -> int:
    raw = os.getenv("NOTIFICATION_OUTBOX_WORKERS", "2").strip()
    try:
        return max(1, int(raw))
    except ValueError:
        return 2


_outbox = NotificationOutbox(max_workers=_outbox_workers())


def get_outbox() -> NotificationOutbox:
    return _outbox


def shutdown_outbox() -> None:
    _outbox.shutdown(wait=True)
