from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import date, datetime
from decimal import Decimal
import enum

from commission_core.schemas.commission import Adjustment, LedgerEntry


class RunAction(str, enum.Enum):
    APPROVE = "approve"
    PAY = "pay"
    VOID = "void"


class AssembleRequest(BaseModel):
    # Any date inside the period to assemble
    period_date: date
    created_by: Optional[int] = None
    notes: Optional[str] = None


class TransitionRequest(BaseModel):
    action: RunAction
    actor_id: Optional[int] = None
    reason: Optional[str] = None


class VoidRequest(BaseModel):
    reason: str = Field(..., min_length=10)
    actor_id: Optional[int] = None


class PayrollPeriod(BaseModel):
    id: str  # period start, "YYYY-MM-DD"
    start: date
    end: date
    payout_date: date
    label: str
    is_current: bool = False


class PayrollRunInDB(BaseModel):
    id: int
    period_start: date
    period_end: date
    payout_date: date
    status: str
    total_commission: Decimal
    total_adjustments: Decimal
    total_payout: Decimal
    transaction_count: int
    created_by: Optional[int] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    paid_by: Optional[int] = None
    paid_at: Optional[datetime] = None
    voided_by: Optional[int] = None
    voided_at: Optional[datetime] = None
    void_reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PayrollRun(PayrollRunInDB):
    pass


class EarnerSummary(BaseModel):
    user_id: int
    name: str
    email: str
    commission: Decimal
    adjustments: Decimal
    total: Decimal
    deals: int


class PayrollRunDetail(BaseModel):
    run: PayrollRun
    earners: List[EarnerSummary] = []
    entries: List[LedgerEntry] = []
    adjustments: List[Adjustment] = []
