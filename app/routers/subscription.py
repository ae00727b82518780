import logging

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from app import models, schemas
from app.auth import get_current_active_user
from app.database import get_db
from app.notifications import NotificationOutbox, get_outbox
from app.razorpay_client import RazorpayClient, get_razorpay_client
from app.services import reconciliation

router = APIRouter(prefix="/api/subscription", tags=["subscription"])
logger = logging.getLogger(__name__)


@router.get("/me", response_model=schemas.SubscriptionStatusResponse)
def get_my_subscription(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return reconciliation.subscription_status(db, current_user)


@router.post("/subscribe", response_model=schemas.CheckoutResponse)
def subscribe(
    payload: schemas.SubscribeRequest,
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
):
    return reconciliation.subscribe(
        db,
        client,
        current_user,
        plan_id=payload.plan_id,
        payment_type=payload.payment_type,
        gateway=payload.gateway,
    )


@router.post("/renew", response_model=schemas.CheckoutResponse)
def manual_renew_subscription(
    payload: schemas.ManualRenewRequest,
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
):
    return reconciliation.manual_renew(
        db,
        client,
        current_user,
        plan_id=payload.plan_id,
        payment_type=payload.payment_type,
    )


@router.post("/confirm-payment", response_model=schemas.SubscriptionStatusResponse)
def confirm_payment(
    payload: schemas.ConfirmPaymentRequest = Body(...),
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    outcome = reconciliation.confirm_payment(
        db,
        client,
        current_user,
        order_id=payload.razorpay_order_id,
        payment_id=payload.razorpay_payment_id,
        signature=payload.razorpay_signature,
        outbox=outbox,
    )
    logger.info("checkout_confirmed user_id=%s outcome=%s", current_user.id, outcome.as_dict())
    return reconciliation.subscription_status(db, current_user)


@router.post("/cancel", response_model=schemas.SubscriptionStatusResponse)
def cancel_my_subscription(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
):
    reconciliation.cancel_plan(db, client, current_user)
    return reconciliation.subscription_status(db, current_user)


@router.post("/pause", response_model=schemas.SubscriptionStatusResponse)
def pause_my_subscription(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
):
    reconciliation.pause_subscription(db, client, current_user)
    return reconciliation.subscription_status(db, current_user)


@router.post("/resume", response_model=schemas.SubscriptionStatusResponse)
def resume_my_subscription(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
):
    reconciliation.resume_subscription(db, client, current_user)
    return reconciliation.subscription_status(db, current_user)


@router.post("/cancel-auto-renewal", response_model=schemas.SubscriptionStatusResponse)
def cancel_auto_renewal(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
):
    reconciliation.cancel_auto_renewal(db, client, current_user)
    return reconciliation.subscription_status(db, current_user)
