"""CSV exports of a payroll run: per-earner summary and per-transaction detail."""
import io
import logging
from decimal import Decimal

import pandas as pd
from sqlalchemy.orm import Session

from commission_core.models.client import Client
from commission_core.models.commission import CommissionAdjustment, LedgerEntry, LedgerStatus
from commission_core.models.user import User
from commission_core.schemas.commission import SplitBasis, parse_calculation_basis
from commission_core.services.payroll import PayrollRunService

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = [
    "Earner", "Email", "Commission Earned", "Adjustments", "Total Payout", "Deals",
    "Period Start", "Period End", "Payout Date",
]

DETAIL_COLUMNS = [
    "Date", "Type", "Recipient", "Email", "Client", "Lead Source", "Role",
    "Gross Amount", "Processor Fee", "Basis Amount", "Rate", "Commission", "Status",
]


def _money(value) -> str:
    if value is None or value == "":
        return ""
    return f"{Decimal(str(value)):.2f}"


def _to_csv(df: pd.DataFrame) -> str:
    buf = io.StringIO()
    df.to_csv(buf, index=False)
    return buf.getvalue()


class PayrollExportService:
    def __init__(self, db: Session, payroll: PayrollRunService = None):
        self.db = db
        self.payroll = payroll or PayrollRunService(db)

    def summary_csv(self, run_id: int) -> str:
        run = self.payroll.get_run(run_id)
        rows = [
            {
                "Earner": r["name"],
                "Email": r["email"],
                "Commission Earned": _money(r["commission"]),
                "Adjustments": _money(r["adjustments"]),
                "Total Payout": _money(r["total"]),
                "Deals": r["deals"],
                "Period Start": run.period_start.isoformat(),
                "Period End": run.period_end.isoformat(),
                "Payout Date": run.payout_date.isoformat(),
            }
            for r in self.payroll.earner_summary(run)
        ]
        rows.append({
            "Earner": "TOTAL",
            "Email": "",
            "Commission Earned": _money(run.total_commission),
            "Adjustments": _money(run.total_adjustments),
            "Total Payout": _money(run.total_payout),
            "Deals": run.transaction_count,
            "Period Start": "",
            "Period End": "",
            "Payout Date": "",
        })
        logger.info(f"Summary export for payroll run {run_id}: {len(rows) - 1} earners")
        return _to_csv(pd.DataFrame(rows, columns=SUMMARY_COLUMNS))

    def detailed_csv(self, run_id: int) -> str:
        run = self.payroll.get_run(run_id)
        entries = (
            self.db.query(LedgerEntry)
            .filter(LedgerEntry.payroll_run_id == run.id, LedgerEntry.status != LedgerStatus.VOID.value)
            .order_by(LedgerEntry.id)
            .all()
        )
        adjustments = [
            a for a in (
                self.db.query(CommissionAdjustment)
                .filter(CommissionAdjustment.payroll_run_id == run.id)
                .order_by(CommissionAdjustment.id)
                .all()
            )
            if a.applies_to_payout
        ]

        user_ids = {e.user_id for e in entries} | {a.user_id for a in adjustments}
        users = {u.id: u for u in self.db.query(User).filter(User.id.in_(user_ids)).all()} if user_ids else {}
        client_ids = {e.client_id for e in entries if e.client_id}
        clients = {c.id: c for c in self.db.query(Client).filter(Client.id.in_(client_ids)).all()} if client_ids else {}

        rows = []
        for e in entries:
            user = users.get(e.user_id)
            client = clients.get(e.client_id)
            basis = parse_calculation_basis(e.calculation_basis)
            if isinstance(basis, SplitBasis):
                rate = f"{basis.split_pct:.0f}%"
            else:
                rate = f"{basis.applied_rate * 100:.0f}%"
            gross = Decimal(str(e.gross_amount))
            basis_amount = Decimal(str(e.net_amount))
            rows.append({
                "Date": e.payment.payment_date.date().isoformat() if e.payment else "",
                "Type": "Commission",
                "Recipient": (user.full_name or user.email) if user else "Unknown",
                "Email": user.email if user else "",
                "Client": client.name if client else "Unknown",
                "Lead Source": (client.lead_source if client else None) or "N/A",
                "Role": e.split_role or "coach",
                "Gross Amount": _money(gross),
                "Processor Fee": _money(gross - basis_amount),
                "Basis Amount": _money(basis_amount),
                "Rate": rate,
                "Commission": _money(e.commission_amount),
                "Status": e.status,
            })

        for a in adjustments:
            user = users.get(a.user_id)
            rows.append({
                "Date": a.created_at.date().isoformat() if a.created_at else a.payout_period_start.isoformat(),
                "Type": f"Adjustment ({a.adjustment_type})",
                "Recipient": (user.full_name or user.email) if user else "Unknown",
                "Email": user.email if user else "",
                "Client": a.reason,
                "Lead Source": "",
                "Role": "",
                "Gross Amount": "",
                "Processor Fee": "",
                "Basis Amount": "",
                "Rate": "",
                "Commission": _money(a.amount),
                "Status": "applied",
            })

        logger.info(f"Detailed export for payroll run {run_id}: {len(entries)} entries, {len(adjustments)} adjustments")
        return _to_csv(pd.DataFrame(rows, columns=DETAIL_COLUMNS))
