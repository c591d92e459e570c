from sqlalchemy import (
    Column, Integer, String, Numeric, Date, DateTime, ForeignKey, Boolean, Text, JSON, Index, text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from commission_core.core.database import Base
import enum


class LedgerStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    VOID = "void"


class EntryType(str, enum.Enum):
    COMMISSION = "commission"
    SPLIT = "split"


class AdjustmentType(str, enum.Enum):
    CHARGEBACK = "chargeback"
    OTHER = "other"


_ACTIVE_ONLY = text("status <> 'void'")


class LedgerEntry(Base):
    """One computed commission for one (payment, earner) pair."""
    __tablename__ = "commission_ledger"
    __table_args__ = (
        # At most one active entry per (payment, earner); voided history is kept
        Index(
            "uq_commission_ledger_active_payment_user",
            "payment_id",
            "user_id",
            unique=True,
            postgresql_where=_ACTIVE_ONLY,
            sqlite_where=_ACTIVE_ONLY,
        ),
    )

    id = Column(Integer, primary_key=True, index=True)

    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True, index=True)

    # Amounts
    gross_amount = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)  # commission basis
    commission_amount = Column(Numeric(12, 2), nullable=False)

    # How the amount was derived (standard rate vs. explicit split)
    entry_type = Column(String, default="commission", nullable=False)
    split_role = Column(String, nullable=True)
    split_percentage = Column(Numeric(5, 2), nullable=True)
    calculation_basis = Column(JSON, nullable=False)

    # Payroll
    payout_period_start = Column(Date, nullable=False, index=True)
    status = Column(String, default="pending", nullable=False, index=True)
    payroll_run_id = Column(Integer, ForeignKey("payroll_runs.id"), nullable=True, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    voided_at = Column(DateTime(timezone=True), nullable=True)
    void_reason = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    payment = relationship("Payment", back_populates="ledger_entries")
    user = relationship("User")
    payroll_run = relationship("PayrollRun", back_populates="ledger_entries")


class CommissionAdjustment(Base):
    """Signed correction to an earner's payout. Negative amounts reduce pay."""
    __tablename__ = "commission_adjustments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    adjustment_type = Column(String, default="other", nullable=False)
    reason = Column(String, nullable=False)
    notes = Column(Text, nullable=True)

    related_ledger_id = Column(Integer, ForeignKey("commission_ledger.id"), nullable=True, index=True)
    related_payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, index=True)

    # Payroll linkage
    payroll_run_id = Column(Integer, ForeignKey("payroll_runs.id"), nullable=True, index=True)
    payout_period_start = Column(Date, nullable=False, index=True)

    is_visible_to_user = Column(Boolean, default=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", foreign_keys=[user_id])
    ledger_entry = relationship("LedgerEntry", foreign_keys=[related_ledger_id])
    payroll_run = relationship("PayrollRun", back_populates="adjustments")

    @property
    def applies_to_payout(self) -> bool:
        # A chargeback against a voided entry is already covered by the void
        return self.ledger_entry is None or self.ledger_entry.status != LedgerStatus.VOID.value
