"""Payroll API: periods, run assembly, the approval pipeline, exports and adjustments.

Specific paths (periods, assemble-due, adjustments) are declared before the
parameterized /runs/{run_id} routes.
"""
import logging
from datetime import date
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from commission_core.api.errors import http_error
from commission_core.core.database import get_db
from commission_core.core.exceptions import CommissionError
from commission_core.models.commission import CommissionAdjustment, LedgerEntry
from commission_core.schemas.commission import Adjustment, AdjustmentCreate, BatchReport
from commission_core.schemas.payroll import (
    AssembleRequest, PayrollPeriod, PayrollRun, PayrollRunDetail, TransitionRequest, VoidRequest,
)
from commission_core.services.payroll import PayrollRunService
from commission_core.services.payroll_export import PayrollExportService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/payroll", tags=["payroll"])


# ── Specific-path routes FIRST ───────────────────────────────────────

@router.get("/periods", response_model=List[PayrollPeriod])
def list_periods(back: int = 12, forward: int = 4, db: Session = Depends(get_db)):
    """Recent and upcoming payroll periods, newest first."""
    calendar = PayrollRunService(db).calendar
    today = date.today()
    return [
        PayrollPeriod(
            id=p.id,
            start=p.start,
            end=p.end,
            payout_date=p.payout_date,
            label=p.label,
            is_current=p.contains(today),
        )
        for p in calendar.periods_around(today, back=back, forward=forward)
    ]


@router.post("/assemble-due", response_model=BatchReport)
def assemble_due(db: Session = Depends(get_db)):
    """Assemble drafts for every ended period with unbatched entries."""
    return PayrollRunService(db).assemble_due_periods()


@router.post("/adjustments", response_model=Adjustment)
def add_adjustment(body: AdjustmentCreate, db: Session = Depends(get_db)):
    try:
        return PayrollRunService(db).add_adjustment(body)
    except CommissionError as e:
        raise http_error(e)


@router.delete("/adjustments/{adjustment_id}")
def remove_adjustment(adjustment_id: int, db: Session = Depends(get_db)):
    try:
        PayrollRunService(db).remove_adjustment(adjustment_id)
    except CommissionError as e:
        raise http_error(e)
    return {"deleted": adjustment_id}


@router.post("/runs", response_model=PayrollRun)
def assemble_run(body: AssembleRequest, db: Session = Depends(get_db)):
    """Create or refresh the draft run for the period containing ``period_date``."""
    try:
        return PayrollRunService(db).assemble_period(body.period_date, created_by=body.created_by, notes=body.notes)
    except CommissionError as e:
        raise http_error(e)


@router.get("/runs", response_model=List[PayrollRun])
def list_runs(status: Optional[str] = None, limit: int = 50, db: Session = Depends(get_db)):
    return PayrollRunService(db).list_runs(status=status, limit=limit)


# ── Parameterized {run_id} routes LAST ───────────────────────────────

@router.get("/runs/{run_id}", response_model=PayrollRunDetail)
def get_run(run_id: int, db: Session = Depends(get_db)):
    service = PayrollRunService(db)
    try:
        run = service.get_run(run_id)
    except CommissionError as e:
        raise http_error(e)

    entries = (
        db.query(LedgerEntry)
        .filter(LedgerEntry.payroll_run_id == run.id)
        .order_by(LedgerEntry.id)
        .all()
    )
    adjustments = (
        db.query(CommissionAdjustment)
        .filter(CommissionAdjustment.payroll_run_id == run.id)
        .order_by(CommissionAdjustment.id)
        .all()
    )
    return PayrollRunDetail(
        run=run,
        earners=service.earner_summary(run),
        entries=entries,
        adjustments=adjustments,
    )


@router.post("/runs/{run_id}/transition", response_model=PayrollRun)
def transition_run(run_id: int, body: TransitionRequest, db: Session = Depends(get_db)):
    """Move a run along draft -> approved -> paid, or void it."""
    try:
        return PayrollRunService(db).transition(run_id, body.action, actor_id=body.actor_id, reason=body.reason)
    except CommissionError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/runs/{run_id}/void", response_model=PayrollRun)
def void_run(run_id: int, body: VoidRequest, db: Session = Depends(get_db)):
    try:
        return PayrollRunService(db).void(run_id, body.reason, actor_id=body.actor_id)
    except CommissionError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/runs/{run_id}/export")
def export_run(
    run_id: int,
    kind: Literal["summary", "detailed"] = "summary",
    db: Session = Depends(get_db),
):
    """Download a run as CSV: one row per earner, or one row per transaction."""
    exporter = PayrollExportService(db)
    try:
        csv_text = exporter.summary_csv(run_id) if kind == "summary" else exporter.detailed_csv(run_id)
    except CommissionError as e:
        raise http_error(e)

    filename = f"payroll_run_{run_id}_{kind}.csv"
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
