"""
Celery task bodies, run eagerly against the test database.
"""

import pytest
from decimal import Decimal

from commission_core.models.commission import CommissionAdjustment, LedgerEntry
from commission_core.tasks import async_tasks


@pytest.fixture
def tasks_db(monkeypatch, session_factory, db):
    monkeypatch.setattr(async_tasks, "SessionLocal", session_factory)
    yield db


@pytest.fixture
def payment(tasks_db, make_user, make_client, make_payment):
    payment = make_payment(make_client(sold_by=make_user()), "1000", "30")
    payment_id = payment.id
    # Release the fixture session's transaction; tasks open their own session
    tasks_db.commit()
    return payment_id


def test_calculate_payment_commission(tasks_db, payment):
    result = async_tasks.calculate_payment_commission(payment)

    assert result["status"] == "processed"
    assert tasks_db.query(LedgerEntry).filter(LedgerEntry.payment_id == payment).count() == 1


def test_recalculate_period(tasks_db, payment):
    report = async_tasks.recalculate_period("2025-01-01", "2025-01-31")
    assert report == {"processed": 1, "skipped": 0, "failed": 0, "errors": []}


def test_calculate_pending_and_assemble(tasks_db, payment):
    assert async_tasks.calculate_pending_payments()["processed"] == 1
    tasks_db.commit()

    report = async_tasks.assemble_due_payroll_runs()

    assert report["processed"] == 1


def test_apply_refund(tasks_db, payment):
    async_tasks.calculate_payment_commission(payment)
    tasks_db.commit()

    result = async_tasks.apply_refund(payment, "1000.00")

    assert result["status"] == "applied"
    [adj] = tasks_db.query(CommissionAdjustment).all()
    assert adj.amount == Decimal("-485.00")
