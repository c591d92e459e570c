from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Boolean
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from commission_core.core.database import Base
import enum


class PaymentStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    DISPUTED = "disputed"


class Payment(Base):
    """A captured charge, as supplied by payment intake."""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)

    # Processor charge / payment intent id, one payment per captured charge
    processor_payment_id = Column(String, unique=True, nullable=True, index=True)

    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True, index=True)

    # Amounts
    amount = Column(Numeric(12, 2), nullable=False)  # gross
    processor_fee = Column(Numeric(12, 2), nullable=True, default=0)
    net_amount = Column(Numeric(12, 2), nullable=True)

    payment_date = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String, default="succeeded", nullable=False, index=True)

    # Commission tracking
    commission_calculated = Column(Boolean, default=False, nullable=False)

    # Refunds: cumulative refunded vs. cumulative already turned into adjustments
    refund_amount = Column(Numeric(12, 2), default=0, nullable=False)
    refund_compensated_amount = Column(Numeric(12, 2), default=0, nullable=False)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    # Disputes
    dispute_id = Column(String, nullable=True, index=True)
    dispute_status = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    client = relationship("Client")
    ledger_entries = relationship("LedgerEntry", back_populates="payment")
