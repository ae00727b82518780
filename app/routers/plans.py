from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app import models, plans, schemas
from app.auth import get_current_admin_user
from app.database import get_db
from app.razorpay_client import RazorpayClient, get_razorpay_client

router = APIRouter(prefix="/api/plans", tags=["plans"])


@router.get("", response_model=List[schemas.PlanResponse])
def list_active_plans(db: Session = Depends(get_db)):
    return plans.list_plans(db, active_only=True)


@router.get("/all", response_model=List[schemas.PlanResponse])
def list_all_plans(
    _admin: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    return plans.list_plans(db)


@router.get("/{plan_id}", response_model=schemas.PlanResponse)
def get_plan(plan_id: int, db: Session = Depends(get_db)):
    return plans.get_plan(db, plan_id)


@router.post("", response_model=schemas.PlanResponse, status_code=201)
def create_plan(
    payload: schemas.PlanCreate,
    _admin: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
):
    return plans.create_plan(
        db,
        client,
        title=payload.title,
        amount_paise=payload.amount_paise,
        interval=payload.interval,
        description=payload.description or "",
        currency=payload.currency,
        is_active=payload.is_active,
    )


@router.patch("/{plan_id}", response_model=schemas.PlanResponse)
def update_plan(
    plan_id: int,
    payload: schemas.PlanUpdate,
    _admin: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    return plans.update_plan(
        db,
        plan_id,
        title=payload.title,
        description=payload.description,
        is_active=payload.is_active,
    )


@router.delete("/{plan_id}", status_code=204)
def delete_plan(
    plan_id: int,
    _admin: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    plans.delete_plan(db, plan_id)
