"""Commission API: calculate, recalculate and browse the ledger."""
import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from commission_core.api.errors import http_error
from commission_core.core.database import get_db
from commission_core.core.exceptions import CommissionError
from commission_core.models.commission import LedgerEntry as LedgerEntryModel
from commission_core.schemas.commission import (
    BatchReport, CalculationResult, LedgerEntry, RecalculatePeriodRequest,
)
from commission_core.services.commission import CommissionCalculationService
from commission_core.services.directories import EarnerDirectory
from commission_core.services.rates import CommissionRates, RateResolver

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/commissions", tags=["commissions"])


@router.post("/calculate/{payment_id}", response_model=CalculationResult)
def calculate_payment(
    payment_id: int,
    recalculate: bool = False,
    db: Session = Depends(get_db),
):
    """Calculate commission for one payment (or recalculate it)."""
    service = CommissionCalculationService(db)
    try:
        return service.calculate(payment_id, recalculate=recalculate)
    except CommissionError as e:
        raise http_error(e)


@router.post("/recalculate-period", response_model=BatchReport)
def recalculate_period(
    body: RecalculatePeriodRequest,
    db: Session = Depends(get_db),
):
    """Recalculate every payment dated within the range."""
    if body.end < body.start:
        raise HTTPException(status_code=400, detail="end must not be before start")
    return CommissionCalculationService(db).recalculate_period(body.start, body.end)


@router.post("/calculate-pending", response_model=BatchReport)
def calculate_pending(limit: Optional[int] = None, db: Session = Depends(get_db)):
    return CommissionCalculationService(db).calculate_pending_payments(limit=limit)


@router.get("/ledger", response_model=List[LedgerEntry])
def list_ledger(
    payment_id: Optional[int] = None,
    user_id: Optional[int] = None,
    status: Optional[str] = None,
    period_start: Optional[date] = None,
    limit: int = 200,
    db: Session = Depends(get_db),
):
    query = db.query(LedgerEntryModel)
    if payment_id:
        query = query.filter(LedgerEntryModel.payment_id == payment_id)
    if user_id:
        query = query.filter(LedgerEntryModel.user_id == user_id)
    if status:
        query = query.filter(LedgerEntryModel.status == status)
    if period_start:
        query = query.filter(LedgerEntryModel.payout_period_start == period_start)
    return query.order_by(LedgerEntryModel.id.desc()).limit(limit).all()


@router.get("/rates/{user_id}")
def resolve_rate(user_id: int, lead_source: Optional[str] = None, db: Session = Depends(get_db)):
    """Rate an earner would be paid for a lead source, and where it comes from."""
    resolved = RateResolver(EarnerDirectory(db), CommissionRates.from_settings()).resolve(user_id, lead_source)
    return {"user_id": user_id, "lead_source": lead_source, "rate": resolved.rate, "source": resolved.source}
