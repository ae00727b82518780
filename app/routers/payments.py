from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app import ledger, models, schemas
from app.auth import get_current_active_user
from app.database import get_db

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.get("/me", response_model=List[schemas.PaymentResponse])
def list_my_payments(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return ledger.list_payments_for_user(db, current_user.id)
