import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.database import get_db
from app.notifications import NotificationOutbox, get_outbox
from app.razorpay_client import RazorpayClient, get_razorpay_client
from app.services import gateway_events

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


def _process(db: Session, client: RazorpayClient, outbox: NotificationOutbox, body: bytes, provided_signature: str) -> dict:
    event_payload = gateway_events.verify_and_parse(body, provided_signature)
    outcome = gateway_events.handle_event(db, client, event_payload, outbox)
    logger.info(
        "webhook_processed event=%s status=%s reason=%s",
        event_payload.get("event"),
        outcome.status,
        outcome.reason,
    )
    return outcome.as_dict()


@router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    # The raw body is needed for the signature; everything after it blocks on the DB and gateway.
    body = await request.body()
    provided_signature = (request.headers.get("X-Razorpay-Signature") or "").strip()
    return await run_in_threadpool(_process, db, client, outbox, body, provided_signature)
