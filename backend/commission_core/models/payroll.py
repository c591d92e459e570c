"""Payroll run model: one stateful batch of ledger entries per payout."""
from sqlalchemy import Column, Integer, String, Numeric, Date, DateTime, Text, ForeignKey, Index, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from commission_core.core.database import Base
import enum


class PayrollRunStatus(str, enum.Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    PAID = "paid"
    VOID = "void"


_NOT_VOID = text("status <> 'void'")


class PayrollRun(Base):
    __tablename__ = "payroll_runs"
    __table_args__ = (
        # One live run per period; voided runs stay as history
        Index(
            "uq_payroll_runs_live_period",
            "period_start",
            unique=True,
            postgresql_where=_NOT_VOID,
            sqlite_where=_NOT_VOID,
        ),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Period
    period_start = Column(Date, nullable=False, index=True)
    period_end = Column(Date, nullable=False)
    payout_date = Column(Date, nullable=False)

    # Status
    status = Column(String, default="draft", nullable=False)  # draft, approved, paid, void

    # Totals snapshot
    total_commission = Column(Numeric(12, 2), default=0)
    total_adjustments = Column(Numeric(12, 2), default=0)
    total_payout = Column(Numeric(12, 2), default=0)
    transaction_count = Column(Integer, default=0)

    # Audit trail
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    paid_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    voided_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    voided_at = Column(DateTime(timezone=True), nullable=True)
    void_reason = Column(Text, nullable=True)

    notes = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    ledger_entries = relationship("LedgerEntry", back_populates="payroll_run")
    adjustments = relationship("CommissionAdjustment", back_populates="payroll_run")
