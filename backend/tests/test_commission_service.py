"""
Tests for commission calculation and the ledger writer.

Covers the worked examples (company rate, override, 60/40 split), skips,
recalculation history, the locked-run guard and all-or-nothing ledger writes.
"""

import threading

import pytest
from datetime import date, datetime
from decimal import Decimal
from sqlalchemy.exc import IntegrityError

from commission_core.core.config import settings
from commission_core.core.exceptions import (
    InvalidSplitConfiguration, InvalidStateTransition, NoEarnerError, NotFoundError, PersistenceConflict,
)
from commission_core.models.commission import LedgerEntry
from commission_core.models.payment import Payment
from commission_core.services.commission import CommissionCalculationService
from commission_core.services.payroll import PayrollRunService


@pytest.fixture
def service(db, rates, calendar):
    return CommissionCalculationService(db, rates=rates, calendar=calendar)


def entries_for(db, payment_id, status=None):
    query = db.query(LedgerEntry).filter(LedgerEntry.payment_id == payment_id)
    if status:
        query = query.filter(LedgerEntry.status == status)
    return query.order_by(LedgerEntry.id).all()


class TestCalculate:

    def test_company_driven_global_rate(self, db, service, make_user, make_client, make_payment):
        coach = make_user()
        payment = make_payment(make_client(sold_by=coach), "1000", "30")

        result = service.calculate(payment.id)

        assert result.status == "processed"
        assert result.entries == 1
        [entry] = entries_for(db, payment.id)
        assert entry.user_id == coach.id
        assert entry.commission_amount == Decimal("485.00")
        assert entry.net_amount == Decimal("970.00")
        assert entry.status == "pending"
        assert entry.calculation_basis["type"] == "standard"
        assert entry.calculation_basis["rate_source"] == "global"
        assert entry.payout_period_start == date(2024, 12, 30)
        db.refresh(payment)
        assert payment.commission_calculated is True

    def test_earner_override(self, db, service, make_user, make_client, make_payment):
        coach = make_user(commission_config={"company_lead_rate": 0.6})
        payment = make_payment(make_client(sold_by=coach), "1000", "30")

        service.calculate(payment.id)

        [entry] = entries_for(db, payment.id)
        assert entry.commission_amount == Decimal("582.00")
        assert entry.calculation_basis["rate_source"] == "override"

    def test_sixty_forty_split(self, db, service, make_user, make_client, make_payment):
        coach_a, coach_b = make_user("Coach A"), make_user("Coach B")
        client = make_client(sold_by=coach_a, splits=[(coach_a, 60, "coach"), (coach_b, 40, "closer")])
        payment = make_payment(client, "2000", "60")

        result = service.calculate(payment.id)

        assert result.entries == 2
        amounts = {e.user_id: e.commission_amount for e in entries_for(db, payment.id)}
        assert amounts == {coach_a.id: Decimal("1164.00"), coach_b.id: Decimal("776.00")}
        for e in entries_for(db, payment.id):
            assert e.entry_type == "split"
            assert e.net_amount == Decimal("1940.00")

    def test_under_allocated_split_warns(self, db, service, make_user, make_client, make_payment):
        coach = make_user()
        payment = make_payment(make_client(sold_by=coach, splits=[(coach, 50, "coach")]), "100")

        result = service.calculate(payment.id)

        assert result.status == "processed"
        assert result.warnings
        assert sum(e.commission_amount for e in entries_for(db, payment.id)) == Decimal("50.00")

    def test_zero_basis_skips(self, db, service, make_user, make_client, make_payment):
        payment = make_payment(make_client(sold_by=make_user()), "30", "30")

        result = service.calculate(payment.id)

        assert result.status == "skipped"
        assert result.reason == "Zero basis"
        assert entries_for(db, payment.id) == []

    def test_already_calculated_is_skipped(self, db, service, make_user, make_client, make_payment):
        payment = make_payment(make_client(sold_by=make_user()), "100")
        service.calculate(payment.id)

        again = service.calculate(payment.id)

        assert again.status == "skipped"
        assert again.reason == "Already calculated"
        assert len(entries_for(db, payment.id)) == 1

    def test_refunded_payment_is_skipped(self, db, service, make_user, make_client, make_payment):
        payment = make_payment(make_client(sold_by=make_user()), "100", status="refunded")
        assert service.calculate(payment.id).status == "skipped"
        assert entries_for(db, payment.id) == []

    def test_no_earner(self, db, service, make_client, make_payment):
        payment = make_payment(make_client(), "100")
        with pytest.raises(NoEarnerError):
            service.calculate(payment.id)
        assert entries_for(db, payment.id) == []
        assert db.get(Payment, payment.id).commission_calculated is False

    def test_over_allocated_split_writes_nothing(self, db, service, make_user, make_client, make_payment):
        a, b = make_user(), make_user()
        payment = make_payment(make_client(sold_by=a, splits=[(a, 80, "coach"), (b, 30, "closer")]), "100")
        with pytest.raises(InvalidSplitConfiguration):
            service.calculate(payment.id)
        assert entries_for(db, payment.id) == []

    def test_unknown_payment(self, service):
        with pytest.raises(NotFoundError):
            service.calculate(987654)


class TestRecalculate:

    def test_n_recalculations_keep_one_active_set(self, db, service, make_user, make_client, make_payment):
        a, b = make_user(), make_user()
        payment = make_payment(make_client(sold_by=a, splits=[(a, 60, "coach"), (b, 40, "closer")]), "2000", "60")

        service.calculate(payment.id)
        for _ in range(3):
            service.calculate(payment.id, recalculate=True)

        assert len(entries_for(db, payment.id, "pending")) == 2
        voided = entries_for(db, payment.id, "void")
        assert len(voided) == 6
        assert all(e.void_reason == "recalculated" for e in voided)

    def test_recalculation_picks_up_new_rate(self, db, service, make_user, make_client, make_payment):
        coach = make_user()
        payment = make_payment(make_client(sold_by=coach), "1000", "30")
        service.calculate(payment.id)

        coach.commission_config = {"company_lead_rate": 0.6}
        db.commit()
        service.calculate(payment.id, recalculate=True)

        [active] = entries_for(db, payment.id, "pending")
        assert active.commission_amount == Decimal("582.00")

    def test_zero_basis_recalculation_voids_prior_set(self, db, service, make_user, make_client, make_payment):
        payment = make_payment(make_client(sold_by=make_user()), "100", "10")
        service.calculate(payment.id)

        payment.processor_fee = Decimal("100")
        db.commit()
        result = service.calculate(payment.id, recalculate=True)

        assert result.status == "skipped"
        assert entries_for(db, payment.id, "pending") == []
        assert len(entries_for(db, payment.id, "void")) == 1

    def test_recalculation_blocked_by_approved_run(
        self, db, service, calendar, dispatcher, make_user, make_client, make_payment
    ):
        payment = make_payment(make_client(sold_by=make_user()), "1000", "30")
        service.calculate(payment.id)
        payroll = PayrollRunService(db, calendar=calendar, dispatcher=dispatcher)
        run = payroll.assemble_period(date(2025, 1, 6))
        payroll.approve(run.id)

        with pytest.raises(InvalidStateTransition):
            service.calculate(payment.id, recalculate=True)

        [entry] = entries_for(db, payment.id)
        assert entry.status == "pending"
        assert entry.payroll_run_id == run.id

    def test_recalculation_refreshes_draft_run(
        self, db, service, calendar, dispatcher, make_user, make_client, make_payment
    ):
        coach = make_user()
        payment = make_payment(make_client(sold_by=coach), "1000", "30")
        service.calculate(payment.id)
        payroll = PayrollRunService(db, calendar=calendar, dispatcher=dispatcher)
        run = payroll.assemble_period(date(2025, 1, 6))
        assert run.total_commission == Decimal("485.00")

        coach.commission_config = {"company_lead_rate": 0.6}
        db.commit()
        service.calculate(payment.id, recalculate=True)

        db.refresh(run)
        assert run.total_commission == Decimal("582.00")
        assert run.transaction_count == 1
        [active] = entries_for(db, payment.id, "pending")
        assert active.payroll_run_id == run.id


class TestBatch:

    def test_recalculate_period_report(self, db, service, make_user, make_client, make_payment):
        coach = make_user()
        ok = make_payment(make_client(sold_by=coach), "100", payment_date=datetime(2025, 1, 2))
        zero = make_payment(make_client(sold_by=coach), "10", "10", payment_date=datetime(2025, 1, 3))
        orphan = make_payment(make_client(), "50", payment_date=datetime(2025, 1, 4))
        outside = make_payment(make_client(sold_by=coach), "100", payment_date=datetime(2025, 2, 1))

        report = service.recalculate_period(date(2025, 1, 1), date(2025, 1, 31))

        assert (report.processed, report.skipped, report.failed) == (1, 1, 1)
        assert len(report.errors) == 1
        assert f"Payment {orphan.id}" in report.errors[0]
        assert len(entries_for(db, ok.id)) == 1
        assert entries_for(db, zero.id) == []
        assert entries_for(db, outside.id) == []

    def test_calculate_pending_payments(self, db, service, make_user, make_client, make_payment):
        coach = make_user()
        p1 = make_payment(make_client(sold_by=coach), "100")
        p2 = make_payment(make_client(sold_by=coach), "200")
        make_payment(make_client(sold_by=coach), "300", status="refunded")

        report = service.calculate_pending_payments()

        assert report.processed == 2
        assert report.failed == 0
        assert len(entries_for(db, p1.id)) == 1
        assert len(entries_for(db, p2.id)) == 1
        assert service.calculate_pending_payments().processed == 0


class TestAtomicity:

    @pytest.fixture
    def booked(self, db, service, make_user, make_client, make_payment):
        coach = make_user()
        payment = make_payment(make_client(sold_by=coach), "1000", "30")
        service.calculate(payment.id)
        [entry] = entries_for(db, payment.id)
        return payment.id, entry.id

    def test_failed_insert_keeps_previous_set_active(self, db, service, monkeypatch, booked):
        payment_id, entry_id = booked
        real_flush = db.flush

        def flush_rejecting_new_entries(*args, **kwargs):
            if any(isinstance(obj, LedgerEntry) for obj in db.new):
                raise IntegrityError("INSERT INTO commission_ledger", {}, Exception("duplicate active entry"))
            return real_flush(*args, **kwargs)

        monkeypatch.setattr(db, "flush", flush_rejecting_new_entries)
        with pytest.raises(PersistenceConflict):
            service.calculate(payment_id, recalculate=True)
        monkeypatch.undo()

        db.expire_all()
        [entry] = entries_for(db, payment_id)
        assert entry.id == entry_id
        assert entry.status == "pending"
        assert entry.voided_at is None

    def test_conflict_is_retried_then_given_up(self, db, service, monkeypatch, booked):
        payment_id, entry_id = booked
        calls = []

        def always_conflicting(payment, commissions, replace=False):
            calls.append(payment.id)
            raise PersistenceConflict(f"Concurrent ledger write for payment {payment.id}")

        monkeypatch.setattr(service.ledger, "write", always_conflicting)

        with pytest.raises(PersistenceConflict):
            service.calculate(payment_id, recalculate=True)

        assert len(calls) == settings.PERSISTENCE_RETRY_ATTEMPTS
        assert [e.id for e in entries_for(db, payment_id, "pending")] == [entry_id]

    def test_conflict_resolved_on_retry(self, db, service, monkeypatch, booked):
        payment_id, entry_id = booked
        real_write = service.ledger.write
        calls = []

        def conflicting_once(payment, commissions, replace=False):
            calls.append(payment.id)
            if len(calls) == 1:
                raise PersistenceConflict(f"Concurrent ledger write for payment {payment.id}")
            return real_write(payment, commissions, replace=replace)

        monkeypatch.setattr(service.ledger, "write", conflicting_once)

        result = service.calculate(payment_id, recalculate=True)

        assert result.status == "processed"
        assert len(calls) == 2
        [active] = entries_for(db, payment_id, "pending")
        assert active.id != entry_id

    def test_concurrent_recalculations_leave_one_active_set(
        self, db, session_factory, rates, calendar, booked
    ):
        payment_id, _ = booked
        # Release the fixture session's transaction; each worker opens its own session
        db.commit()
        barrier = threading.Barrier(2)
        results, errors = [], []

        def recalculate():
            session = session_factory()
            try:
                worker = CommissionCalculationService(session, rates=rates, calendar=calendar)
                barrier.wait()
                results.append(worker.calculate(payment_id, recalculate=True).status)
            except Exception as e:
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=recalculate) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []
        assert results == ["processed", "processed"]
        db.expire_all()
        assert len(entries_for(db, payment_id, "pending")) == 1
        assert len(entries_for(db, payment_id, "void")) == 2
