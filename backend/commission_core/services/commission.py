import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from commission_core.core.config import settings
from commission_core.core.exceptions import CommissionError, PersistenceConflict, ZeroBasisSkip
from commission_core.core.locks import payment_lock
from commission_core.models.payment import Payment, PaymentStatus
from commission_core.schemas.commission import BatchReport, CalculationResult
from commission_core.services.directories import ClientDirectory, EarnerDirectory
from commission_core.services.ledger import LedgerWriter
from commission_core.services.notifications import EarnerNotice, NotificationDispatcher
from commission_core.services.payroll import PayrollRunService
from commission_core.services.payroll_periods import PayrollCalendar
from commission_core.services.rates import CommissionRates, RateResolver
from commission_core.services.reversal import ReversalEngine
from commission_core.services.splits import SplitCalculator

logger = logging.getLogger(__name__)

# Statuses the pending scan picks up; full refunds never earn commission
CALCULABLE_STATUSES = (
    PaymentStatus.SUCCEEDED.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
    PaymentStatus.DISPUTED.value,
)


class CommissionCalculationService:
    """
    Commission calculation logic:
    1. Basis is gross minus processor fee; a zero basis books nothing
    2. Explicit client splits define the whole distribution
    3. Otherwise the seller (or assigned coach) earns basis x resolved rate
    4. Recalculation voids the previous entry set and inserts a new one
    """

    def __init__(
        self,
        db: Session,
        rates: Optional[CommissionRates] = None,
        calendar: Optional[PayrollCalendar] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.rates = rates or CommissionRates.from_settings()
        self.calendar = calendar or PayrollCalendar.from_settings()
        self.clients = ClientDirectory(db)
        self.calculator = SplitCalculator(RateResolver(EarnerDirectory(db), self.rates))
        self.ledger = LedgerWriter(db, self.calendar)
        self.payroll = PayrollRunService(db, calendar=self.calendar, dispatcher=dispatcher)
        self.reversals = ReversalEngine(db, calendar=self.calendar, dispatcher=dispatcher)

    def calculate(self, payment_id: int, recalculate: bool = False) -> CalculationResult:
        """
        Calculate (or recalculate) commission for one payment.

        Skips are returned, failures raise with the transaction rolled back.
        A uniqueness conflict from a concurrent writer is retried under the lock.
        """
        attempts = max(1, settings.PERSISTENCE_RETRY_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                return self._calculate_once(payment_id, recalculate)
            except PersistenceConflict as e:
                if attempt == attempts:
                    raise
                logger.warning(f"Payment {payment_id}: {e}; retrying ({attempt}/{attempts})")

    def _calculate_once(self, payment_id: int, recalculate: bool) -> CalculationResult:
        notices: List[EarnerNotice] = []
        with payment_lock(self.db, payment_id) as payment:
            try:
                result = self._calculate_locked(payment, recalculate, notices)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        if notices:
            self.reversals.dispatcher.deliver(notices)
        return result

    def _calculate_locked(self, payment: Payment, recalculate: bool, notices) -> CalculationResult:
        if payment.commission_calculated and not recalculate:
            return CalculationResult(payment_id=payment.id, status="skipped", reason="Already calculated")

        # Once a refund has been charged back, a fresh entry set would orphan those chargebacks
        compensated = Decimal(str(payment.refund_compensated_amount or 0))
        if payment.status == PaymentStatus.REFUNDED.value or compensated > 0:
            return CalculationResult(payment_id=payment.id, status="skipped", reason="Payment refunded")

        client = self.clients.get_client(payment.client_id)
        splits = self.clients.get_splits(client.client_id)

        try:
            calculation = self.calculator.calculate(payment.amount, payment.processor_fee, client, splits)
        except ZeroBasisSkip as skip:
            # Nothing is owed; a previous set from before a fee correction must go
            touched = set()
            if recalculate:
                touched = self.ledger.write(payment, [], replace=True).touched_periods
            payment.commission_calculated = True
            self._refresh_drafts(touched)
            logger.info(f"Payment {payment.id} skipped: {skip}")
            return CalculationResult(payment_id=payment.id, status="skipped", reason=skip.reason)

        written = self.ledger.write(payment, calculation.commissions, replace=recalculate)
        payment.commission_calculated = True
        self._refresh_drafts(written.touched_periods)

        # A partial refund recorded before the entries existed
        reversal = self.reversals.apply_recorded_refund(payment, notices)
        if reversal is not None:
            logger.info(f"Payment {payment.id}: applied earlier refund, {reversal.adjustments} chargebacks")

        logger.info(
            f"Payment {payment.id}: {len(written.inserted)} ledger entries, "
            f"total commission {calculation.total_commission}"
        )
        return CalculationResult(
            payment_id=payment.id,
            status="processed",
            entries=len(written.inserted),
            warnings=calculation.warnings,
        )

    def _refresh_drafts(self, period_starts):
        for period_start in sorted(p for p in period_starts if p):
            self.payroll.refresh_period(period_start)

    def recalculate_period(self, start: date, end: date) -> BatchReport:
        """Recalculate every payment dated within [start, end], both inclusive."""
        if end < start:
            raise ValueError("end must not be before start")

        payment_ids = [
            pid for (pid,) in (
                self.db.query(Payment.id)
                .filter(
                    Payment.payment_date >= datetime.combine(start, time.min),
                    Payment.payment_date < datetime.combine(end + timedelta(days=1), time.min),
                )
                .order_by(Payment.payment_date, Payment.id)
                .all()
            )
        ]
        logger.info(f"Recalculating {len(payment_ids)} payments between {start} and {end}")
        return self._run_batch(payment_ids, recalculate=True)

    def calculate_pending_payments(self, limit: Optional[int] = None) -> BatchReport:
        """Calculate every payment still owed a first calculation."""
        query = (
            self.db.query(Payment.id)
            .filter(
                Payment.commission_calculated == False,  # noqa: E712
                Payment.status.in_(CALCULABLE_STATUSES),
            )
            .order_by(Payment.payment_date, Payment.id)
        )
        if limit:
            query = query.limit(limit)
        payment_ids = [pid for (pid,) in query.all()]
        return self._run_batch(payment_ids, recalculate=False)

    def _run_batch(self, payment_ids: List[int], recalculate: bool) -> BatchReport:
        report = BatchReport()
        error_limit = settings.BATCH_ERROR_LIMIT

        for payment_id in payment_ids:
            try:
                result = self.calculate(payment_id, recalculate=recalculate)
            except CommissionError as e:
                report.failed += 1
                if len(report.errors) < error_limit:
                    report.errors.append(f"Payment {payment_id}: {e}")
                logger.warning(f"Commission failed for payment {payment_id}: {e}")
                continue
            except Exception as e:
                report.failed += 1
                if len(report.errors) < error_limit:
                    report.errors.append(f"Payment {payment_id}: {e}")
                logger.error(f"Unexpected error calculating payment {payment_id}: {e}", exc_info=True)
                continue

            if result.status == "processed":
                report.processed += 1
            else:
                report.skipped += 1

        logger.info(
            f"Batch done: {report.processed} processed, {report.skipped} skipped, {report.failed} failed"
        )
        return report
