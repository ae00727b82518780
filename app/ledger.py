"""
Append-only payment ledger.

Rows are unique per (gateway, gateway_payment_id, status): one completed
and at most one failed entry for any gateway payment. Writers rely on that
constraint, not on a prior read, for exactly-once inserts under concurrency.
"""
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import models

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_PENDING = "pending"
STATUS_CANCELLED = "cancelled"


def payment_exists(db: Session, gateway: str, gateway_payment_id: str, status: str = STATUS_COMPLETED) -> bool:
    return (
        db.query(models.Payment.id)
        .filter(
            models.Payment.gateway == gateway,
            models.Payment.gateway_payment_id == gateway_payment_id,
            models.Payment.status == status,
        )
        .first()
        is not None
    )


def build_entry(
    *,
    user_id: int,
    gateway: str,
    gateway_payment_id: str,
    amount_paise: int,
    currency: str,
    status: str,
    purchase_date: datetime,
    plan_id: Optional[int] = None,
    method: Optional[str] = None,
    gateway_order_id: Optional[str] = None,
    gateway_subscription_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    expire_at: Optional[datetime] = None,
    failure_reason: Optional[str] = None,
    failure_description: Optional[str] = None,
) -> models.Payment:
    return models.Payment(
        user_id=user_id,
        plan_id=plan_id,
        amount_paise=int(amount_paise or 0),
        currency=currency,
        method=(method or "unknown")[:32],
        gateway=gateway,
        gateway_payment_id=gateway_payment_id,
        gateway_order_id=gateway_order_id,
        gateway_subscription_id=gateway_subscription_id,
        invoice_id=invoice_id,
        status=status,
        purchase_date=purchase_date,
        expire_at=expire_at,
        failure_reason=failure_reason[:255] if failure_reason else None,
        failure_description=failure_description,
    )


def record_payment(db: Session, **fields: Any) -> Optional[models.Payment]:
    """Insert a standalone ledger row. Returns None when the row already exists."""
    entry = build_entry(**fields)
    db.add(entry)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(
            "ledger_duplicate gateway=%s payment_id=%s status=%s",
            fields.get("gateway"),
            fields.get("gateway_payment_id"),
            fields.get("status"),
        )
        return None
    db.refresh(entry)
    logger.info(
        "ledger_recorded payment_id=%s status=%s user_id=%s",
        entry.gateway_payment_id,
        entry.status,
        entry.user_id,
    )
    return entry


def list_payments_for_user(db: Session, user_id: int) -> list[models.Payment]:
    return (
        db.query(models.Payment)
        .filter(models.Payment.user_id == user_id)
        .order_by(models.Payment.purchase_date.desc(), models.Payment.id.desc())
        .all()
    )


def list_payments(
    db: Session,
    user_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[models.Payment]:
    query = db.query(models.Payment)
    if user_id is not None:
        query = query.filter(models.Payment.user_id == user_id)
    if status:
        query = query.filter(models.Payment.status == status)
    return (
        query.order_by(models.Payment.purchase_date.desc(), models.Payment.id.desc())
        .offset(max(offset, 0))
        .limit(max(min(limit, 500), 1))
        .all()
    )


def revenue_summary(db: Session) -> list[dict[str, Any]]:
    rows = (
        db.query(
            models.Payment.currency,
            func.coalesce(func.sum(models.Payment.amount_paise), 0),
            func.count(models.Payment.id),
        )
        .filter(models.Payment.status == STATUS_COMPLETED)
        .group_by(models.Payment.currency)
        .order_by(models.Payment.currency.asc())
        .all()
    )
    return [
        {"currency": currency, "total_amount_paise": int(total or 0), "payment_count": int(count or 0)}
        for currency, total, count in rows
    ]
