from pydantic import BaseModel, Field, TypeAdapter
from typing import Annotated, List, Literal, Optional, Union
from datetime import date, datetime
from decimal import Decimal


# ── Calculation basis (stored as JSON on each ledger entry) ─────────

class StandardBasis(BaseModel):
    """Single primary earner paid at a resolved rate."""
    type: Literal["standard"] = "standard"
    lead_source: Optional[str] = None
    applied_rate: Decimal
    rate_source: Literal["override", "global"]
    basis_amount: Decimal


class SplitBasis(BaseModel):
    """Explicit client-level split."""
    type: Literal["split"] = "split"
    role: str
    split_pct: Decimal
    basis_amount: Decimal


CalculationBasis = Annotated[Union[StandardBasis, SplitBasis], Field(discriminator="type")]

calculation_basis_adapter = TypeAdapter(CalculationBasis)


def parse_calculation_basis(data: dict) -> Union[StandardBasis, SplitBasis]:
    return calculation_basis_adapter.validate_python(data)


# ── Ledger ──────────────────────────────────────────────────────────

class LedgerEntryInDB(BaseModel):
    id: int
    payment_id: int
    user_id: int
    client_id: Optional[int] = None
    gross_amount: Decimal
    net_amount: Decimal
    commission_amount: Decimal
    entry_type: str
    split_role: Optional[str] = None
    split_percentage: Optional[Decimal] = None
    calculation_basis: CalculationBasis
    payout_period_start: date
    status: str
    payroll_run_id: Optional[int] = None
    paid_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LedgerEntry(LedgerEntryInDB):
    pass


# ── Adjustments ─────────────────────────────────────────────────────

class AdjustmentCreate(BaseModel):
    user_id: int
    amount: Decimal
    reason: str = Field(..., min_length=5)
    notes: Optional[str] = None
    payroll_run_id: Optional[int] = None
    related_payment_id: Optional[int] = None
    is_visible_to_user: bool = True
    created_by: Optional[int] = None


class AdjustmentInDB(BaseModel):
    id: int
    user_id: int
    amount: Decimal
    adjustment_type: str
    reason: str
    notes: Optional[str] = None
    related_ledger_id: Optional[int] = None
    related_payment_id: Optional[int] = None
    payroll_run_id: Optional[int] = None
    payout_period_start: date
    applies_to_payout: bool
    is_visible_to_user: Optional[bool] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Adjustment(AdjustmentInDB):
    pass


# ── Operation results ───────────────────────────────────────────────

class CalculationResult(BaseModel):
    payment_id: int
    status: Literal["processed", "skipped", "failed"]
    reason: Optional[str] = None
    entries: int = 0
    warnings: List[str] = []


class BatchReport(BaseModel):
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = []


class RecalculatePeriodRequest(BaseModel):
    start: date
    end: date
