"""Reversal engine: refunds and disputes turned into chargeback adjustments.

Refund events carry the cumulative refunded amount ``R`` of a payment with
gross ``G``. For every active ledger entry the target reversal is the full
commission when ``R >= G``, otherwise ``commission * R / G``. Only the part
of the target not already charged back is booked, as a negative adjustment,
so redelivered or out-of-order events never double-deduct.

A fully refunded entry that is still pending (and not frozen in an approved
or paid run) is also voided; its chargeback then no longer applies to payout.
"""
import logging
from collections import OrderedDict
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from commission_core.core.locks import payment_lock
from commission_core.models.commission import (
    AdjustmentType, CommissionAdjustment, LedgerEntry, LedgerStatus,
)
from commission_core.models.payment import Payment, PaymentStatus
from commission_core.models.payroll import PayrollRun
from commission_core.schemas.payment import DisputeClosedEvent, DisputeCreatedEvent, ReversalResult
from commission_core.services.ledger import LOCKED_RUN_STATUSES
from commission_core.services.notifications import (
    EarnerNotice, NotificationDispatcher, build_dispatcher, format_signed,
)
from commission_core.services.payroll import PayrollRunService
from commission_core.services.payroll_periods import PayrollCalendar
from commission_core.services.splits import quantize_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
DISPUTE_LOST = "lost"


class ReversalEngine:
    def __init__(
        self,
        db: Session,
        calendar: Optional[PayrollCalendar] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.calendar = calendar or PayrollCalendar.from_settings()
        self._dispatcher = dispatcher
        self.payroll = PayrollRunService(db, calendar=self.calendar, dispatcher=dispatcher)

    @property
    def dispatcher(self) -> NotificationDispatcher:
        if self._dispatcher is None:
            self._dispatcher = build_dispatcher(self.db)
        return self._dispatcher

    # ── Events ──────────────────────────────────────────────────────

    def apply_refund(self, payment_id: int, refunded_amount) -> ReversalResult:
        """Apply a refund event; ``refunded_amount`` is cumulative for the charge."""
        refunded_amount = Decimal(str(refunded_amount))
        if refunded_amount <= 0:
            raise ValueError("refunded_amount must be positive")

        notices: List[EarnerNotice] = []
        with payment_lock(self.db, payment_id) as payment:
            try:
                result = self._reverse(payment, refunded_amount, notices, reason_prefix="Refund for")
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        if notices:
            self.dispatcher.deliver(notices)
        return result

    def apply_dispute_created(self, payment_id: int, event: DisputeCreatedEvent) -> ReversalResult:
        with payment_lock(self.db, payment_id) as payment:
            try:
                payment.dispute_id = event.dispute_id
                payment.dispute_status = event.dispute_status
                payment.status = PaymentStatus.DISPUTED.value
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        logger.info(f"Payment {payment_id} disputed ({event.dispute_id})")
        return ReversalResult(payment_id=payment_id, status="annotated")

    def apply_dispute_closed(self, payment_id: int, event: DisputeClosedEvent) -> ReversalResult:
        notices: List[EarnerNotice] = []
        with payment_lock(self.db, payment_id) as payment:
            try:
                if event.outcome == "won":
                    result = self._dispute_won(payment, event)
                else:
                    result = self._dispute_lost(payment, event, notices)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        if notices:
            self.dispatcher.deliver(notices)
        return result

    def _dispute_won(self, payment: Payment, event: DisputeClosedEvent) -> ReversalResult:
        payment.dispute_status = event.dispute_status or "won"
        refunded = Decimal(str(payment.refund_amount or 0))
        payment.status = (
            PaymentStatus.PARTIALLY_REFUNDED.value if refunded > 0 else PaymentStatus.SUCCEEDED.value
        )
        logger.info(f"Dispute won on payment {payment.id}; status back to {payment.status}")
        return ReversalResult(payment_id=payment.id, status="annotated")

    def _dispute_lost(self, payment: Payment, event: DisputeClosedEvent, notices) -> ReversalResult:
        if payment.dispute_status == DISPUTE_LOST:
            logger.info(f"Dispute loss on payment {payment.id} already applied")
            return ReversalResult(payment_id=payment.id, status="duplicate")

        gross = Decimal(str(payment.amount))
        disputed = event.disputed_amount if event.disputed_amount is not None else gross
        cumulative = min(gross, Decimal(str(payment.refund_amount or 0)) + disputed)
        payment.dispute_status = DISPUTE_LOST
        return self._reverse(payment, cumulative, notices, reason_prefix="Dispute lost on")

    def apply_recorded_refund(self, payment: Payment, notices) -> Optional[ReversalResult]:
        """Charge back a refund that arrived before the payment had ledger entries.

        The caller holds the payment lock and commits.
        """
        refunded = Decimal(str(payment.refund_amount or 0))
        if refunded <= Decimal(str(payment.refund_compensated_amount or 0)):
            return None
        status = payment.status
        result = self._reverse(payment, refunded, notices, reason_prefix="Refund for")
        # A dispute still open stays visible on the payment
        payment.status = status
        return result

    # ── Core ────────────────────────────────────────────────────────

    def _reverse(self, payment: Payment, refunded: Decimal, notices, reason_prefix: str) -> ReversalResult:
        gross = Decimal(str(payment.amount))
        previous = Decimal(str(payment.refund_amount or 0))
        # A stale, smaller redelivery never lowers what has been refunded
        cumulative = max(refunded, previous)
        effective = min(cumulative, gross)
        is_full = cumulative >= gross
        compensated = Decimal(str(payment.refund_compensated_amount or 0))

        if cumulative != previous:
            payment.refund_amount = cumulative
            payment.refunded_at = datetime.utcnow()
        payment.status = PaymentStatus.REFUNDED.value if is_full else PaymentStatus.PARTIALLY_REFUNDED.value

        if effective <= compensated:
            logger.info(f"Refund of {cumulative} on payment {payment.id} already compensated")
            return ReversalResult(payment_id=payment.id, status="duplicate", is_full_refund=is_full)

        entries = (
            self.db.query(LedgerEntry)
            .filter(LedgerEntry.payment_id == payment.id, LedgerEntry.status != LedgerStatus.VOID.value)
            .order_by(LedgerEntry.id)
            .all()
        )
        if not entries or gross <= 0:
            # Nothing compensated yet; calculation books the reversal once entries exist
            logger.info(f"Refund on payment {payment.id}: no ledger entries to reverse")
            return ReversalResult(payment_id=payment.id, status="no_entries", is_full_refund=is_full)

        payment.refund_compensated_amount = effective
        delta = effective - compensated

        locked_runs = self._locked_run_ids({e.payroll_run_id for e in entries if e.payroll_run_id})
        adjustment_period = self.calendar.period_start(date.today())
        client_name = payment.client.name if payment.client else f"client {payment.client_id}"
        touched: Set[date] = set()
        per_earner: "OrderedDict[int, Decimal]" = OrderedDict()
        adjustments = 0
        voided = 0

        for entry in entries:
            commission = Decimal(str(entry.commission_amount))
            target = commission if is_full else quantize_money(commission * effective / gross)
            reversal = target - self._already_reversed(entry)

            if reversal > 0:
                self.db.add(
                    CommissionAdjustment(
                        user_id=entry.user_id,
                        amount=-reversal,
                        adjustment_type=AdjustmentType.CHARGEBACK.value,
                        reason=f"{reason_prefix} {client_name}'s payment",
                        related_ledger_id=entry.id,
                        related_payment_id=payment.id,
                        payout_period_start=adjustment_period,
                        is_visible_to_user=True,
                    )
                )
                adjustments += 1
                per_earner[entry.user_id] = per_earner.get(entry.user_id, ZERO) - reversal
                touched.add(adjustment_period)

            if (
                is_full
                and entry.status == LedgerStatus.PENDING.value
                and entry.payroll_run_id not in locked_runs
            ):
                entry.status = LedgerStatus.VOID.value
                entry.voided_at = datetime.utcnow()
                entry.void_reason = "refunded"
                entry.payroll_run_id = None
                touched.add(entry.payout_period_start)
                voided += 1

        self.db.flush()
        for period_start in sorted(touched):
            self.payroll.refresh_period(period_start)

        for earner_id, amount in per_earner.items():
            notices.append(
                EarnerNotice(
                    earner_id=earner_id,
                    message=f"Chargeback: {client_name}'s payment was reversed ({format_signed(amount)})",
                    signed_amount=amount,
                    type="chargeback",
                )
            )

        logger.info(
            f"Refund on payment {payment.id}: {adjustments} chargebacks, {voided} entries voided, "
            f"compensated {compensated} -> {effective}"
        )
        return ReversalResult(
            payment_id=payment.id,
            status="applied",
            is_full_refund=is_full,
            compensated_delta=delta,
            adjustments=adjustments,
            voided_entries=voided,
        )

    def _already_reversed(self, entry: LedgerEntry) -> Decimal:
        amounts = (
            self.db.query(CommissionAdjustment.amount)
            .filter(
                CommissionAdjustment.related_ledger_id == entry.id,
                CommissionAdjustment.adjustment_type == AdjustmentType.CHARGEBACK.value,
            )
            .all()
        )
        return -sum((Decimal(str(a)) for (a,) in amounts), ZERO)

    def _locked_run_ids(self, run_ids) -> Set[int]:
        if not run_ids:
            return set()
        runs = self.db.execute(
            select(PayrollRun).where(PayrollRun.id.in_(run_ids)).with_for_update()
        ).scalars().all()
        return {r.id for r in runs if r.status in LOCKED_RUN_STATUSES}
