"""Payment events: intake, refunds and disputes."""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from commission_core.api.errors import http_error
from commission_core.core.database import get_db
from commission_core.core.exceptions import CommissionError
from commission_core.schemas.commission import CalculationResult
from commission_core.schemas.payment import (
    DisputeClosedEvent, DisputeCreatedEvent, Payment, PaymentCreate, RefundEvent, ReversalResult,
)
from commission_core.services.commission import CommissionCalculationService
from commission_core.services.directories import PaymentIntake
from commission_core.services.reversal import ReversalEngine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/")
def record_payment(body: PaymentCreate, db: Session = Depends(get_db)):
    """Record a captured payment and calculate its commission right away."""
    try:
        payment, created = PaymentIntake(db).record(body)
    except CommissionError as e:
        raise http_error(e)

    try:
        calculation = CommissionCalculationService(db).calculate(payment.id)
    except CommissionError as e:
        # The payment is stored; the calculation can be retried later
        logger.warning(f"Commission calculation failed for new payment {payment.id}: {e}")
        calculation = CalculationResult(payment_id=payment.id, status="failed", reason=str(e))

    db.refresh(payment)
    return {
        "payment": Payment.model_validate(payment),
        "created": created,
        "commission": calculation,
    }


@router.get("/{payment_id}", response_model=Payment)
def get_payment(payment_id: int, db: Session = Depends(get_db)):
    try:
        return PaymentIntake(db).get(payment_id)
    except CommissionError as e:
        raise http_error(e)


@router.post("/{payment_id}/refund", response_model=ReversalResult)
def refund_payment(payment_id: int, body: RefundEvent, db: Session = Depends(get_db)):
    """Apply a refund; ``refunded_amount`` is the cumulative refunded total."""
    try:
        return ReversalEngine(db).apply_refund(payment_id, body.refunded_amount)
    except CommissionError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{payment_id}/dispute", response_model=ReversalResult)
def dispute_created(payment_id: int, body: DisputeCreatedEvent, db: Session = Depends(get_db)):
    try:
        return ReversalEngine(db).apply_dispute_created(payment_id, body)
    except CommissionError as e:
        raise http_error(e)


@router.post("/{payment_id}/dispute/closed", response_model=ReversalResult)
def dispute_closed(payment_id: int, body: DisputeClosedEvent, db: Session = Depends(get_db)):
    try:
        return ReversalEngine(db).apply_dispute_closed(payment_id, body)
    except CommissionError as e:
        raise http_error(e)
