"""
Plan catalog and plan attribution for captured payments.

Attribution walks a fixed ladder of sources, strongest first:

1. the plan stored on the subscription whose live reference matches
2. ``plan_id`` in the payment notes, then in the gateway order or subscription notes
3. the gateway plan id of the gateway subscription object
4. exact amount match (narrowed by description when several plans share a price)
5. description substring match against plan titles

The first tier that yields exactly one plan wins. A tier that yields several
candidates makes the whole attribution ambiguous rather than guessing.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app import models
from app.errors import NotFoundError, ReconciliationAmbiguity, ValidationError
from app.razorpay_client import RazorpayClient, billing_currency, normalize_currency

logger = logging.getLogger(__name__)

# interval -> (Razorpay period, Razorpay interval)
GATEWAY_PERIODS = {
    "weekly": ("weekly", 1),
    "monthly": ("monthly", 1),
    "quarterly": ("monthly", 3),
    "half-yearly": ("monthly", 6),
    "yearly": ("yearly", 1),
}
VALID_INTERVALS = tuple(GATEWAY_PERIODS)

SOURCE_LIVE_REF = "live_ref"
SOURCE_PAYMENT_NOTES = "payment_notes"
SOURCE_GATEWAY_NOTES = "gateway_notes"
SOURCE_GATEWAY_PLAN = "gateway_plan"
SOURCE_AMOUNT = "amount"
SOURCE_AMOUNT_AND_DESCRIPTION = "amount_and_description"
SOURCE_DESCRIPTION = "description"

REASON_NO_MATCH = "no_plan_match"
REASON_MULTIPLE_AMOUNT = "multiple_amount_matches"
REASON_MULTIPLE_DESCRIPTION = "multiple_description_matches"


@dataclass(frozen=True)
class PlanResolution:
    plan: Optional[models.Plan] = None
    source: Optional[str] = None
    reason: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.plan is not None

    def unwrap(self) -> models.Plan:
        if self.plan is None:
            raise ReconciliationAmbiguity(f"Unable to attribute payment to a plan ({self.reason})", reason=self.reason)
        return self.plan


def normalize_interval(raw_interval: str) -> str:
    interval = (raw_interval or "").strip().lower()
    if interval not in GATEWAY_PERIODS:
        raise ValidationError(f"Invalid interval. Use one of: {', '.join(VALID_INTERVALS)}.")
    return interval


def get_plan(db: Session, plan_id: int) -> models.Plan:
    plan = db.query(models.Plan).filter(models.Plan.id == plan_id).first()
    if not plan:
        raise NotFoundError("Plan not found")
    return plan


def list_plans(db: Session, active_only: bool = False) -> list[models.Plan]:
    query = db.query(models.Plan)
    if active_only:
        query = query.filter(models.Plan.is_active.is_(True))
    return query.order_by(models.Plan.amount_paise.asc(), models.Plan.id.asc()).all()


def create_plan(
    db: Session,
    client: RazorpayClient,
    *,
    title: str,
    amount_paise: int,
    interval: str,
    description: str = "",
    currency: str | None = None,
    is_active: bool = True,
) -> models.Plan:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Plan title is required.")
    if int(amount_paise or 0) <= 0:
        raise ValidationError("Plan price must be positive.")
    interval = normalize_interval(interval)
    currency = normalize_currency(currency) if currency else billing_currency()

    existing = (
        db.query(models.Plan)
        .filter(models.Plan.title == title, models.Plan.interval == interval)
        .first()
    )
    if existing:
        raise ValidationError("A plan with this title and interval already exists.")

    period, period_interval = GATEWAY_PERIODS[interval]
    gateway_plan = client.create_plan(
        period=period,
        interval=period_interval,
        name=title,
        amount_paise=int(amount_paise),
        currency=currency,
        description=description,
    )

    plan = models.Plan(
        title=title,
        description=(description or "").strip(),
        amount_paise=int(amount_paise),
        currency=currency,
        interval=interval,
        gateway_plan_id=str(gateway_plan.get("id") or "").strip() or None,
        is_active=is_active,
    )
    db.add(plan)
    db.commit()
    db.refresh(plan)
    logger.info("plan_created plan_id=%s interval=%s gateway_plan_id=%s", plan.id, interval, plan.gateway_plan_id)
    return plan


def update_plan(
    db: Session,
    plan_id: int,
    *,
    title: str | None = None,
    description: str | None = None,
    is_active: bool | None = None,
) -> models.Plan:
    plan = get_plan(db, plan_id)
    if title is not None:
        title = title.strip()
        if not title:
            raise ValidationError("Plan title is required.")
        clash = (
            db.query(models.Plan)
            .filter(models.Plan.title == title, models.Plan.interval == plan.interval, models.Plan.id != plan.id)
            .first()
        )
        if clash:
            raise ValidationError("A plan with this title and interval already exists.")
        plan.title = title
    if description is not None:
        plan.description = description.strip()
    if is_active is not None:
        plan.is_active = is_active
    db.commit()
    db.refresh(plan)
    return plan


def delete_plan(db: Session, plan_id: int) -> None:
    plan = get_plan(db, plan_id)
    in_use = (
        db.query(models.Subscription.id)
        .filter(or_(models.Subscription.plan_id == plan.id, models.Subscription.pending_plan_id == plan.id))
        .first()
        or db.query(models.Payment.id).filter(models.Payment.plan_id == plan.id).first()
    )
    if in_use:
        raise ValidationError("Plan is referenced by subscriptions or payments; deactivate it instead.")
    db.delete(plan)
    db.commit()
    logger.info("plan_deleted plan_id=%s", plan_id)


def _plan_id_from_notes(notes: Any) -> Optional[int]:
    if not isinstance(notes, dict):
        return None
    try:
        return int(str(notes.get("plan_id") or "").strip())
    except ValueError:
        return None


def _title_matches(plan: models.Plan, description: str) -> bool:
    title = (plan.title or "").strip().lower()
    return bool(title) and title in description


def resolve_plan(
    db: Session,
    *,
    ref_plan_id: Optional[int] = None,
    payment_notes: Optional[dict[str, Any]] = None,
    fetch_gateway_notes: Optional[Callable[[], Optional[dict[str, Any]]]] = None,
    gateway_plan_id: Optional[str] = None,
    amount_paise: Optional[int] = None,
    description: Optional[str] = None,
) -> PlanResolution:
    if ref_plan_id is not None:
        plan = db.query(models.Plan).filter(models.Plan.id == ref_plan_id).first()
        if plan:
            return PlanResolution(plan=plan, source=SOURCE_LIVE_REF)

    notes_plan_id = _plan_id_from_notes(payment_notes)
    if notes_plan_id is not None:
        plan = db.query(models.Plan).filter(models.Plan.id == notes_plan_id).first()
        if plan:
            return PlanResolution(plan=plan, source=SOURCE_PAYMENT_NOTES)

    if fetch_gateway_notes is not None:
        notes_plan_id = _plan_id_from_notes(fetch_gateway_notes())
        if notes_plan_id is not None:
            plan = db.query(models.Plan).filter(models.Plan.id == notes_plan_id).first()
            if plan:
                return PlanResolution(plan=plan, source=SOURCE_GATEWAY_NOTES)

    if gateway_plan_id:
        plan = (
            db.query(models.Plan)
            .filter(models.Plan.gateway_plan_id == gateway_plan_id)
            .order_by(models.Plan.id.asc())
            .first()
        )
        if plan:
            return PlanResolution(plan=plan, source=SOURCE_GATEWAY_PLAN)

    plans = db.query(models.Plan).order_by(models.Plan.id.asc()).all()
    description = (description or "").strip().lower()

    if amount_paise:
        by_amount = [plan for plan in plans if plan.amount_paise == int(amount_paise)]
        if len(by_amount) == 1:
            return PlanResolution(plan=by_amount[0], source=SOURCE_AMOUNT)
        if len(by_amount) > 1:
            narrowed = [plan for plan in by_amount if _title_matches(plan, description)]
            if len(narrowed) == 1:
                return PlanResolution(plan=narrowed[0], source=SOURCE_AMOUNT_AND_DESCRIPTION)
            return PlanResolution(reason=REASON_MULTIPLE_AMOUNT)

    if description:
        by_description = [plan for plan in plans if _title_matches(plan, description)]
        if len(by_description) == 1:
            return PlanResolution(plan=by_description[0], source=SOURCE_DESCRIPTION)
        if len(by_description) > 1:
            return PlanResolution(reason=REASON_MULTIPLE_DESCRIPTION)

    return PlanResolution(reason=REASON_NO_MATCH)
