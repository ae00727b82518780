import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app import ledger, models, schemas
from app.auth import get_current_admin_user
from app.database import get_db
from app.errors import NotFoundError
from app.notifications import NotificationOutbox, get_outbox
from app.razorpay_client import RazorpayClient, get_razorpay_client
from app.services import reconciliation
from app.services.subscription_sweeps import cleanup_abandoned_subscriptions, expire_lapsed_subscriptions

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger(__name__)


def _load_user(db: Session, user_id: int) -> models.User:
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise NotFoundError("User not found")
    return user


@router.get("/users/{user_id}/subscription", response_model=schemas.SubscriptionStatusResponse)
def get_user_subscription(
    user_id: int,
    _admin: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    return reconciliation.subscription_status(db, _load_user(db, user_id))


@router.post("/users/{user_id}/plan", response_model=schemas.SubscriptionStatusResponse)
def change_user_plan(
    user_id: int,
    payload: schemas.ChangeUserPlanRequest,
    admin: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    reconciliation.change_user_plan(
        db,
        client,
        user_id,
        payload.plan_id,
        outbox,
        manual_amount_paise=payload.manual_amount_paise,
    )
    logger.info("admin_action action=change_plan admin_id=%s user_id=%s", admin.id, user_id)
    return reconciliation.subscription_status(db, _load_user(db, user_id))


@router.post("/users/{user_id}/free-access", response_model=schemas.SubscriptionStatusResponse)
def add_free_access(
    user_id: int,
    payload: schemas.FreeAccessRequest,
    admin: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    reconciliation.add_free_access(db, user_id, payload.days, plan_id=payload.plan_id)
    logger.info("admin_action action=free_access admin_id=%s user_id=%s", admin.id, user_id)
    return reconciliation.subscription_status(db, _load_user(db, user_id))


@router.post("/users/{user_id}/extend", response_model=schemas.SubscriptionStatusResponse)
def extend_user_plan(
    user_id: int,
    payload: schemas.ExtendPlanRequest,
    admin: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    reconciliation.extend_user_plan(db, user_id, payload.days)
    logger.info("admin_action action=extend admin_id=%s user_id=%s", admin.id, user_id)
    return reconciliation.subscription_status(db, _load_user(db, user_id))


@router.post("/users/{user_id}/suspend", response_model=schemas.SubscriptionStatusResponse)
def suspend_user_plan(
    user_id: int,
    admin: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
):
    reconciliation.suspend_user_plan(db, client, user_id)
    logger.info("admin_action action=suspend admin_id=%s user_id=%s", admin.id, user_id)
    return reconciliation.subscription_status(db, _load_user(db, user_id))


@router.get("/subscriptions/expiring", response_model=List[schemas.ExpiringGroup])
def users_by_expiry_date(
    days: int = Query(7, ge=1, le=365),
    _admin: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    return reconciliation.users_by_expiry_date(db, days)


@router.get("/payments", response_model=List[schemas.PaymentResponse])
def list_payments(
    user_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _admin: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    return ledger.list_payments(db, user_id=user_id, status=status, limit=limit, offset=offset)


@router.get("/payments/revenue", response_model=List[schemas.RevenueSummaryRow])
def revenue_summary(
    _admin: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    return ledger.revenue_summary(db)


@router.post("/sweeps/run", response_model=schemas.SweepResult)
def run_sweeps(
    admin: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    result = {
        "expired": expire_lapsed_subscriptions(db, outbox=outbox),
        "abandoned_cleared": cleanup_abandoned_subscriptions(db),
    }
    logger.info("admin_action action=run_sweeps admin_id=%s result=%s", admin.id, result)
    return result
