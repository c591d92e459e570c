from commission_core.models.user import User, UserRole
from commission_core.models.client import Client, CommissionSplit, LeadSource
from commission_core.models.payment import Payment, PaymentStatus
from commission_core.models.commission import (
    LedgerEntry, LedgerStatus, EntryType,
    CommissionAdjustment, AdjustmentType,
)
from commission_core.models.payroll import PayrollRun, PayrollRunStatus
from commission_core.models.notification import Notification

__all__ = [
    "User",
    "UserRole",
    "Client",
    "CommissionSplit",
    "LeadSource",
    "Payment",
    "PaymentStatus",
    "LedgerEntry",
    "LedgerStatus",
    "EntryType",
    "CommissionAdjustment",
    "AdjustmentType",
    "PayrollRun",
    "PayrollRunStatus",
    "Notification",
]
