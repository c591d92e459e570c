"""Payroll run aggregation and the run state machine.

    draft ──approve──▶ approved ──pay──▶ paid
      │                   │
      └──────void─────────┴──▶ void

A draft run is a live snapshot of the period's pending entries and applying
adjustments; it is refreshed whenever those change. Approval freezes the set:
entries in an approved or paid run cannot be recalculated or voided.
"""
import logging
from collections import OrderedDict
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from commission_core.core.config import settings
from commission_core.core.exceptions import (
    InvalidStateTransition, NotFoundError, PersistenceConflict,
)
from commission_core.models.commission import (
    AdjustmentType, CommissionAdjustment, LedgerEntry, LedgerStatus,
)
from commission_core.models.payroll import PayrollRun, PayrollRunStatus
from commission_core.models.user import User
from commission_core.schemas.commission import AdjustmentCreate, BatchReport
from commission_core.schemas.payroll import RunAction
from commission_core.services.notifications import (
    EarnerNotice, NotificationDispatcher, build_dispatcher, format_signed,
)
from commission_core.services.payroll_periods import PayrollCalendar, PayrollPeriod

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# status -> {action: next status}
ALLOWED_TRANSITIONS = {
    PayrollRunStatus.DRAFT.value: {
        RunAction.APPROVE.value: PayrollRunStatus.APPROVED.value,
        RunAction.VOID.value: PayrollRunStatus.VOID.value,
    },
    PayrollRunStatus.APPROVED.value: {
        RunAction.PAY.value: PayrollRunStatus.PAID.value,
        RunAction.VOID.value: PayrollRunStatus.VOID.value,
    },
}


class PayrollRunService:
    def __init__(
        self,
        db: Session,
        calendar: Optional[PayrollCalendar] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.calendar = calendar or PayrollCalendar.from_settings()
        self._dispatcher = dispatcher

    @property
    def dispatcher(self) -> NotificationDispatcher:
        if self._dispatcher is None:
            self._dispatcher = build_dispatcher(self.db)
        return self._dispatcher

    # ── Lookup ──────────────────────────────────────────────────────

    def get_run(self, run_id: int, for_update: bool = False) -> PayrollRun:
        stmt = select(PayrollRun).where(PayrollRun.id == run_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        run = self.db.execute(stmt).scalar_one_or_none()
        if not run:
            raise NotFoundError("Payroll run", run_id)
        return run

    def list_runs(self, status: Optional[str] = None, limit: int = 50) -> List[PayrollRun]:
        query = self.db.query(PayrollRun)
        if status:
            query = query.filter(PayrollRun.status == status)
        return query.order_by(PayrollRun.period_start.desc(), PayrollRun.id.desc()).limit(limit).all()

    def live_run_for(self, period_start: date, for_update: bool = False) -> Optional[PayrollRun]:
        stmt = select(PayrollRun).where(
            PayrollRun.period_start == period_start,
            PayrollRun.status != PayrollRunStatus.VOID.value,
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.db.execute(stmt).scalar_one_or_none()

    def period_of(self, run: PayrollRun) -> PayrollPeriod:
        return PayrollPeriod(start=run.period_start, end=run.period_end, payout_date=run.payout_date)

    # ── Assembly ────────────────────────────────────────────────────

    def assemble_period(
        self,
        day: date,
        created_by: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> PayrollRun:
        """Create (or refresh) the draft run for the period containing ``day``."""
        period = self.calendar.period_for(day)
        try:
            run = self.live_run_for(period.start, for_update=True)
            if run and run.status != PayrollRunStatus.DRAFT.value:
                raise InvalidStateTransition(
                    f"Payroll run {run.id} for {period.label} is already {run.status}"
                )
            if run is None:
                run = PayrollRun(
                    period_start=period.start,
                    period_end=period.end,
                    payout_date=period.payout_date,
                    status=PayrollRunStatus.DRAFT.value,
                    created_by=created_by,
                    notes=notes,
                    total_commission=ZERO,
                    total_adjustments=ZERO,
                    total_payout=ZERO,
                    transaction_count=0,
                )
                self.db.add(run)
                self.db.flush()
                logger.info(f"Created draft payroll run {run.id} for {period.label}")
            elif notes:
                run.notes = notes

            self._snapshot(run)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise PersistenceConflict(f"Another payroll run for {period.label} was created concurrently") from e
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(run)
        return run

    def refresh_period(self, period_start: date) -> Optional[PayrollRun]:
        """Re-snapshot the draft run of a period, if one exists. Does not commit.

        When the period's run is already locked, the next open draft is
        refreshed instead so late entries land there.
        """
        run = self.live_run_for(period_start, for_update=True)
        if run is not None and run.status != PayrollRunStatus.DRAFT.value:
            run = self.live_run_for(self.assemblable_period(period_start), for_update=True)
        if run is None or run.status != PayrollRunStatus.DRAFT.value:
            return None
        self._snapshot(run)
        return run

    def _snapshot(self, run: PayrollRun):
        # Release what no longer belongs
        stale_entries = (
            self.db.query(LedgerEntry)
            .filter(LedgerEntry.payroll_run_id == run.id, LedgerEntry.status == LedgerStatus.VOID.value)
            .all()
        )
        for entry in stale_entries:
            entry.payroll_run_id = None
        for adj in self.db.query(CommissionAdjustment).filter(CommissionAdjustment.payroll_run_id == run.id).all():
            if not adj.applies_to_payout:
                adj.payroll_run_id = None

        # This period's pending entries, plus stragglers from earlier periods
        # that have no draft of their own (late intake into a locked period)
        earlier_drafts = select(PayrollRun.period_start).where(
            PayrollRun.status == PayrollRunStatus.DRAFT.value,
            PayrollRun.id != run.id,
        )
        entries = (
            self.db.query(LedgerEntry)
            .filter(
                LedgerEntry.payroll_run_id.is_(None),
                LedgerEntry.status == LedgerStatus.PENDING.value,
                LedgerEntry.payout_period_start <= run.period_start,
                LedgerEntry.payout_period_start.notin_(earlier_drafts),
            )
            .all()
        )
        for entry in entries:
            if entry.payout_period_start != run.period_start:
                logger.info(
                    f"Carrying ledger entry {entry.id} from period {entry.payout_period_start} into run {run.id}"
                )
            entry.payroll_run_id = run.id

        # Adjustments carry forward until some run picks them up
        adjustments = (
            self.db.query(CommissionAdjustment)
            .filter(
                CommissionAdjustment.payroll_run_id.is_(None),
                CommissionAdjustment.payout_period_start <= run.period_start,
            )
            .all()
        )
        for adj in adjustments:
            if adj.applies_to_payout:
                adj.payroll_run_id = run.id

        self.db.flush()
        self._recalculate_totals(run)
        logger.debug(
            f"Payroll run {run.id} snapshot: {run.transaction_count} entries, total {run.total_payout}"
        )

    def _recalculate_totals(self, run: PayrollRun):
        entries = self._run_entries(run)
        adjustments = self._run_adjustments(run)
        run.total_commission = sum((Decimal(str(e.commission_amount)) for e in entries), ZERO)
        run.total_adjustments = sum((Decimal(str(a.amount)) for a in adjustments), ZERO)
        run.total_payout = run.total_commission + run.total_adjustments
        run.transaction_count = len(entries)

    def _run_entries(self, run: PayrollRun) -> List[LedgerEntry]:
        return (
            self.db.query(LedgerEntry)
            .filter(LedgerEntry.payroll_run_id == run.id, LedgerEntry.status != LedgerStatus.VOID.value)
            .order_by(LedgerEntry.id)
            .all()
        )

    def _run_adjustments(self, run: PayrollRun) -> List[CommissionAdjustment]:
        rows = (
            self.db.query(CommissionAdjustment)
            .filter(CommissionAdjustment.payroll_run_id == run.id)
            .order_by(CommissionAdjustment.id)
            .all()
        )
        return [a for a in rows if a.applies_to_payout]

    def assemble_due_periods(self, today: Optional[date] = None) -> BatchReport:
        """Assemble a draft for every ended period that still has unattached pending entries.

        Entries stranded in a period whose run is already approved or paid go
        to the next period that can still take a draft, once that one has ended.
        """
        today = today or date.today()
        current_start = self.calendar.period_start(today)
        period_starts = [
            p for (p,) in (
                self.db.query(LedgerEntry.payout_period_start)
                .filter(
                    LedgerEntry.status == LedgerStatus.PENDING.value,
                    LedgerEntry.payroll_run_id.is_(None),
                    LedgerEntry.payout_period_start < current_start,
                )
                .distinct()
                .order_by(LedgerEntry.payout_period_start)
                .all()
            )
        ]

        report = BatchReport()
        error_limit = settings.BATCH_ERROR_LIMIT
        assembled = set()
        for period_start in period_starts:
            target = self.assemblable_period(period_start)
            if target in assembled:
                continue
            if target >= current_start:
                report.skipped += 1
                logger.info(f"Entries of period {period_start} wait for the period starting {target} to end")
                continue
            assembled.add(target)
            try:
                self.assemble_period(target)
                report.processed += 1
            except InvalidStateTransition as e:
                report.skipped += 1
                logger.info(f"Skipping period {target}: {e}")
            except Exception as e:
                report.failed += 1
                if len(report.errors) < error_limit:
                    report.errors.append(f"Period {target}: {e}")
                logger.error(f"Failed to assemble payroll for {target}: {e}", exc_info=True)
        return report

    def assemblable_period(self, period_start: date) -> date:
        """First period on or after ``period_start`` with no approved or paid run."""
        step = timedelta(days=self.calendar.period_length_days)
        run = self.live_run_for(period_start)
        while run is not None and run.status != PayrollRunStatus.DRAFT.value:
            period_start += step
            run = self.live_run_for(period_start)
        return period_start

    # ── State machine ───────────────────────────────────────────────

    def transition(
        self,
        run_id: int,
        action,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> PayrollRun:
        action = RunAction(action)
        notices: List[EarnerNotice] = []
        try:
            run = self.get_run(run_id, for_update=True)
            target = ALLOWED_TRANSITIONS.get(run.status, {}).get(action.value)
            if target is None:
                raise InvalidStateTransition(f"Cannot {action.value} a payroll run that is {run.status}")

            if action == RunAction.APPROVE:
                notices = self._approve(run, actor_id)
            elif action == RunAction.PAY:
                notices = self._pay(run, actor_id)
            else:
                self._void(run, actor_id, reason)

            run.status = target
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Payroll run {run_id} -> {target} (actor {actor_id})")
        self.db.refresh(run)
        if notices:
            self.dispatcher.deliver(notices)
        return run

    def approve(self, run_id: int, actor_id: Optional[int] = None) -> PayrollRun:
        return self.transition(run_id, RunAction.APPROVE, actor_id=actor_id)

    def mark_paid(self, run_id: int, actor_id: Optional[int] = None) -> PayrollRun:
        return self.transition(run_id, RunAction.PAY, actor_id=actor_id)

    def void(self, run_id: int, reason: str, actor_id: Optional[int] = None) -> PayrollRun:
        return self.transition(run_id, RunAction.VOID, actor_id=actor_id, reason=reason)

    def _approve(self, run: PayrollRun, actor_id) -> List[EarnerNotice]:
        self._recalculate_totals(run)
        run.approved_by = actor_id
        run.approved_at = datetime.utcnow()
        label = self.period_of(run).label
        return [
            EarnerNotice(
                earner_id=row["user_id"],
                message=f"Your commission of {format_signed(row['total'])} for {label} has been approved",
                signed_amount=row["total"],
                type="payroll_approved",
                payroll_run_id=run.id,
            )
            for row in self.earner_summary(run)
        ]

    def _pay(self, run: PayrollRun, actor_id) -> List[EarnerNotice]:
        now = datetime.utcnow()
        for entry in self._run_entries(run):
            if entry.status == LedgerStatus.PENDING.value:
                entry.status = LedgerStatus.PAID.value
                entry.paid_at = now
        run.paid_by = actor_id
        run.paid_at = now
        return [
            EarnerNotice(
                earner_id=row["user_id"],
                message=f"Payout of {format_signed(row['total'])} scheduled for {run.payout_date:%b} {run.payout_date.day}",
                signed_amount=row["total"],
                type="payroll_paid",
                payroll_run_id=run.id,
            )
            for row in self.earner_summary(run)
        ]

    def _void(self, run: PayrollRun, actor_id, reason: Optional[str]):
        if not reason or not reason.strip():
            raise ValueError("A reason is required to void a payroll run")
        released = 0
        for entry in self.db.query(LedgerEntry).filter(LedgerEntry.payroll_run_id == run.id).all():
            if entry.status == LedgerStatus.PENDING.value:
                released += 1
            entry.payroll_run_id = None
        for adj in self.db.query(CommissionAdjustment).filter(CommissionAdjustment.payroll_run_id == run.id).all():
            adj.payroll_run_id = None
        run.voided_by = actor_id
        run.voided_at = datetime.utcnow()
        run.void_reason = reason.strip()
        logger.info(f"Voiding payroll run {run.id}: released {released} entries")

    # ── Per-earner view ─────────────────────────────────────────────

    def earner_summary(self, run: PayrollRun) -> List[Dict]:
        """One row per earner: commission, adjustments, total and deal count."""
        rows: "OrderedDict[int, Dict]" = OrderedDict()

        def row_for(user_id):
            if user_id not in rows:
                rows[user_id] = {
                    "user_id": user_id,
                    "commission": ZERO,
                    "adjustments": ZERO,
                    "total": ZERO,
                    "deals": 0,
                }
            return rows[user_id]

        for entry in self._run_entries(run):
            row = row_for(entry.user_id)
            row["commission"] += Decimal(str(entry.commission_amount))
            row["deals"] += 1
        for adj in self._run_adjustments(run):
            row_for(adj.user_id)["adjustments"] += Decimal(str(adj.amount))

        users = {
            u.id: u for u in self.db.query(User).filter(User.id.in_(list(rows.keys()))).all()
        } if rows else {}
        for row in rows.values():
            row["total"] = row["commission"] + row["adjustments"]
            user = users.get(row["user_id"])
            row["name"] = (user.full_name or user.email) if user else "Unknown"
            row["email"] = user.email if user else ""
        return sorted(rows.values(), key=lambda r: r["name"].lower())

    # ── Manual adjustments ──────────────────────────────────────────

    def add_adjustment(self, data: AdjustmentCreate) -> CommissionAdjustment:
        try:
            if data.payroll_run_id:
                run = self.get_run(data.payroll_run_id, for_update=True)
                if run.status != PayrollRunStatus.DRAFT.value:
                    raise InvalidStateTransition(f"Payroll run {run.id} is {run.status}; adjustments are locked")
                period_start = run.period_start
            else:
                run = None
                period_start = self.calendar.period_start(date.today())

            adj = CommissionAdjustment(
                user_id=data.user_id,
                amount=data.amount,
                adjustment_type=AdjustmentType.OTHER.value,
                reason=data.reason,
                notes=data.notes,
                related_payment_id=data.related_payment_id,
                payroll_run_id=run.id if run else None,
                payout_period_start=period_start,
                is_visible_to_user=data.is_visible_to_user,
                created_by=data.created_by,
            )
            self.db.add(adj)
            self.db.flush()
            if run:
                self._recalculate_totals(run)
            else:
                self.refresh_period(period_start)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(adj)
        logger.info(f"Adjustment {adj.id} of {adj.amount} added for earner {adj.user_id}")
        if adj.is_visible_to_user:
            amount = Decimal(str(adj.amount))
            self.dispatcher.deliver([
                EarnerNotice(
                    earner_id=adj.user_id,
                    message=f"Adjustment {format_signed(amount)}: {adj.reason}",
                    signed_amount=amount,
                    type="adjustment_added",
                    payroll_run_id=adj.payroll_run_id,
                )
            ])
        return adj

    def remove_adjustment(self, adjustment_id: int):
        try:
            adj = self.db.query(CommissionAdjustment).filter(CommissionAdjustment.id == adjustment_id).first()
            if not adj:
                raise NotFoundError("Adjustment", adjustment_id)
            if adj.adjustment_type == AdjustmentType.CHARGEBACK.value:
                raise InvalidStateTransition("Chargeback adjustments are managed by refunds and cannot be removed")
            run = self.get_run(adj.payroll_run_id, for_update=True) if adj.payroll_run_id else None
            if run and run.status != PayrollRunStatus.DRAFT.value:
                raise InvalidStateTransition(f"Payroll run {run.id} is {run.status}; adjustments are locked")

            self.db.delete(adj)
            self.db.flush()
            if run:
                self._recalculate_totals(run)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Adjustment {adjustment_id} removed")
