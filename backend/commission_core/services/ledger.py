"""Ledger writer: one active commission entry per (payment, earner).

Recalculation never updates entries in place. The payment's pending entries
are voided and the fresh set inserted inside one savepoint, so a failure
leaves the previous set untouched. Entries already paid, or captured by an
approved/paid payroll run, make the payment ineligible for recalculation.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Set

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from commission_core.core.exceptions import InvalidStateTransition, PersistenceConflict
from commission_core.models.commission import LedgerEntry, LedgerStatus
from commission_core.models.payment import Payment
from commission_core.models.payroll import PayrollRun, PayrollRunStatus
from commission_core.services.payroll_periods import PayrollCalendar
from commission_core.services.splits import EarnerCommission

logger = logging.getLogger(__name__)

LOCKED_RUN_STATUSES = (PayrollRunStatus.APPROVED.value, PayrollRunStatus.PAID.value)


@dataclass
class LedgerWriteResult:
    inserted: List[LedgerEntry] = field(default_factory=list)
    voided: List[LedgerEntry] = field(default_factory=list)
    # Payout periods whose draft runs need a fresh snapshot
    touched_periods: Set[date] = field(default_factory=set)


class LedgerWriter:
    def __init__(self, db: Session, calendar: PayrollCalendar):
        self.db = db
        self.calendar = calendar

    def active_entries(self, payment_id: int) -> List[LedgerEntry]:
        return (
            self.db.query(LedgerEntry)
            .filter(
                LedgerEntry.payment_id == payment_id,
                LedgerEntry.status != LedgerStatus.VOID.value,
            )
            .order_by(LedgerEntry.id)
            .all()
        )

    def assert_recalculable(self, entries: List[LedgerEntry]):
        """Reject recalculation once any entry is paid or sits in a locked run."""
        paid = [e.id for e in entries if e.status == LedgerStatus.PAID.value]
        if paid:
            raise InvalidStateTransition(f"Ledger entries {paid} are already paid")

        run_ids = {e.payroll_run_id for e in entries if e.payroll_run_id}
        if not run_ids:
            return
        # Row-lock the runs so an approval cannot slip in before we commit
        runs = self.db.execute(
            select(PayrollRun).where(PayrollRun.id.in_(run_ids)).with_for_update()
        ).scalars().all()
        locked = [r for r in runs if r.status in LOCKED_RUN_STATUSES]
        if locked:
            raise InvalidStateTransition(
                f"Payment is part of payroll run {locked[0].id} ({locked[0].status}); recalculation is not allowed"
            )

    def write(
        self,
        payment: Payment,
        commissions: List[EarnerCommission],
        replace: bool = False,
    ) -> LedgerWriteResult:
        active = self.active_entries(payment.id)
        if active and not replace:
            raise InvalidStateTransition(
                f"Payment {payment.id} already has {len(active)} active ledger entries; request a recalculation"
            )
        if active:
            self.assert_recalculable(active)

        result = LedgerWriteResult()
        now = datetime.utcnow()
        period_start = self.calendar.period_start(payment.payment_date)

        try:
            with self.db.begin_nested():
                for entry in active:
                    entry.status = LedgerStatus.VOID.value
                    entry.voided_at = now
                    entry.void_reason = "recalculated"
                    entry.payroll_run_id = None
                    result.voided.append(entry)
                    result.touched_periods.add(entry.payout_period_start)
                # Voids must reach the database before the replacements hit the unique index
                self.db.flush()

                for c in commissions:
                    entry = LedgerEntry(
                        payment_id=payment.id,
                        user_id=c.earner_id,
                        client_id=payment.client_id,
                        gross_amount=payment.amount,
                        net_amount=c.basis.basis_amount,
                        commission_amount=c.commission_amount,
                        entry_type=c.entry_type,
                        split_role=c.split_role,
                        split_percentage=c.split_percentage,
                        calculation_basis=c.basis.model_dump(mode="json"),
                        payout_period_start=period_start,
                        status=LedgerStatus.PENDING.value,
                    )
                    self.db.add(entry)
                    result.inserted.append(entry)
                self.db.flush()
        except IntegrityError as e:
            raise PersistenceConflict(
                f"Concurrent ledger write for payment {payment.id}: {e.orig}"
            ) from e

        if result.inserted:
            result.touched_periods.add(period_start)

        logger.info(
            f"Ledger: payment {payment.id} voided {len(result.voided)}, inserted {len(result.inserted)} entries"
        )
        return result
