"""Celery entry points for externally scheduled callers (cron, processor webhooks)."""
import logging
from datetime import date

from commission_core.celery_app import celery_app
from commission_core.core.database import SessionLocal
from commission_core.services.commission import CommissionCalculationService
from commission_core.services.payroll import PayrollRunService
from commission_core.services.reversal import ReversalEngine

logger = logging.getLogger(__name__)


@celery_app.task(name="calculate_payment_commission")
def calculate_payment_commission(payment_id: int, recalculate: bool = False):
    """
    Async task to calculate commission for one payment
    """
    db = SessionLocal()
    try:
        service = CommissionCalculationService(db)
        result = service.calculate(payment_id, recalculate=recalculate)
        return result.model_dump(mode="json")
    finally:
        db.close()


@celery_app.task(name="recalculate_period")
def recalculate_period(start: str, end: str):
    """
    Async task to recalculate every payment dated within [start, end]
    Dates are ISO strings: "YYYY-MM-DD"
    """
    db = SessionLocal()
    try:
        service = CommissionCalculationService(db)
        report = service.recalculate_period(date.fromisoformat(start), date.fromisoformat(end))
        return report.model_dump(mode="json")
    finally:
        db.close()


@celery_app.task(name="calculate_pending_payments")
def calculate_pending_payments(limit: int = None):
    db = SessionLocal()
    try:
        report = CommissionCalculationService(db).calculate_pending_payments(limit=limit)
        return report.model_dump(mode="json")
    finally:
        db.close()


@celery_app.task(name="assemble_due_payroll_runs")
def assemble_due_payroll_runs():
    """
    Async task to assemble draft payroll runs for every ended period
    """
    db = SessionLocal()
    try:
        report = PayrollRunService(db).assemble_due_periods()
        logger.info(f"Payroll assembly: {report.processed} runs, {report.skipped} skipped, {report.failed} failed")
        return report.model_dump(mode="json")
    finally:
        db.close()


@celery_app.task(name="apply_refund")
def apply_refund(payment_id: int, refunded_amount: str):
    """
    Async task to apply a processor refund event
    refunded_amount is the cumulative refunded total, as a decimal string
    """
    db = SessionLocal()
    try:
        result = ReversalEngine(db).apply_refund(payment_id, refunded_amount)
        return result.model_dump(mode="json")
    finally:
        db.close()
