from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import datetime
from decimal import Decimal


class PaymentCreate(BaseModel):
    processor_payment_id: Optional[str] = None
    client_id: int
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    processor_fee: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    net_amount: Optional[Decimal] = None
    payment_date: datetime
    status: Literal["succeeded", "refunded", "partially_refunded", "disputed"] = "succeeded"


class PaymentInDB(BaseModel):
    id: int
    processor_payment_id: Optional[str] = None
    client_id: Optional[int] = None
    amount: Decimal
    processor_fee: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    payment_date: datetime
    status: str
    commission_calculated: bool
    refund_amount: Decimal
    refund_compensated_amount: Decimal
    refunded_at: Optional[datetime] = None
    dispute_id: Optional[str] = None
    dispute_status: Optional[str] = None

    class Config:
        from_attributes = True


class Payment(PaymentInDB):
    pass


class RefundEvent(BaseModel):
    # Cumulative amount refunded on the charge so far, not the increment
    refunded_amount: Decimal = Field(..., gt=0)


class DisputeCreatedEvent(BaseModel):
    dispute_id: str
    dispute_status: str = "needs_response"


class DisputeClosedEvent(BaseModel):
    outcome: Literal["won", "lost"]
    disputed_amount: Optional[Decimal] = Field(None, gt=0)
    dispute_status: Optional[str] = None


class ReversalResult(BaseModel):
    payment_id: int
    status: Literal["applied", "duplicate", "no_entries", "annotated"]
    is_full_refund: bool = False
    compensated_delta: Decimal = Decimal("0")
    adjustments: int = 0
    voided_entries: int = 0
