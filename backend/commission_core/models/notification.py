"""Earner notifications written by the database notification sink."""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Boolean, ForeignKey
from sqlalchemy.sql import func
from commission_core.core.database import Base


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    type = Column(String, nullable=False)  # chargeback, payroll_approved, payroll_paid, adjustment_added
    category = Column(String, default="commission", nullable=False)
    message = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=True)  # signed
    payroll_run_id = Column(Integer, ForeignKey("payroll_runs.id"), nullable=True)

    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
