"""
Tests for payroll CSV exports.
"""

import io

import pandas as pd
import pytest
from datetime import date, datetime
from decimal import Decimal

from commission_core.schemas.commission import AdjustmentCreate
from commission_core.services.commission import CommissionCalculationService
from commission_core.services.payroll import PayrollRunService
from commission_core.services.payroll_export import PayrollExportService


@pytest.fixture
def run(db, rates, calendar, dispatcher, make_user, make_client, make_payment):
    a, b = make_user("Avery Coach"), make_user("Blake Closer")
    service = CommissionCalculationService(db, rates=rates, calendar=calendar)
    split_client = make_client(name="Jane", sold_by=a, splits=[(a, 60, "coach"), (b, 40, "closer")])
    solo_client = make_client(name="Jon", sold_by=a, lead_source="self_generated")
    service.calculate(make_payment(split_client, "2000", "60", payment_date=datetime(2025, 1, 6)).id)
    service.calculate(make_payment(solo_client, "100", "0", payment_date=datetime(2025, 1, 7)).id)

    payroll = PayrollRunService(db, calendar=calendar, dispatcher=dispatcher)
    run = payroll.assemble_period(date(2025, 1, 6))
    payroll.add_adjustment(
        AdjustmentCreate(user_id=b.id, amount=Decimal("-26"), reason="Equipment advance", payroll_run_id=run.id)
    )
    return run


@pytest.fixture
def exporter(db, calendar, dispatcher):
    return PayrollExportService(db, PayrollRunService(db, calendar=calendar, dispatcher=dispatcher))


class TestSummaryExport:

    def test_one_row_per_earner_plus_total(self, exporter, run):
        df = pd.read_csv(io.StringIO(exporter.summary_csv(run.id)), dtype=str, keep_default_na=False)

        assert list(df["Earner"]) == ["Avery Coach", "Blake Closer", "TOTAL"]
        avery = df.iloc[0]
        assert avery["Commission Earned"] == "1234.00"  # 1164 + 70
        assert avery["Deals"] == "2"
        assert avery["Period Start"] == "2024-12-30"
        assert avery["Payout Date"] == "2025-01-17"
        blake = df.iloc[1]
        assert blake["Adjustments"] == "-26.00"
        assert blake["Total Payout"] == "750.00"
        total = df.iloc[2]
        assert total["Total Payout"] == "1984.00"
        assert total["Deals"] == "3"


class TestDetailedExport:

    def test_rows_for_entries_and_adjustments(self, exporter, run):
        df = pd.read_csv(io.StringIO(exporter.detailed_csv(run.id)), dtype=str, keep_default_na=False)

        assert len(df) == 4
        commissions = df[df["Type"] == "Commission"]
        assert sorted(commissions["Rate"]) == ["40%", "60%", "70%"]
        solo = commissions[commissions["Client"] == "Jon"].iloc[0]
        assert solo["Lead Source"] == "self_generated"
        assert solo["Role"] == "coach"
        assert solo["Commission"] == "70.00"
        split_row = commissions[commissions["Rate"] == "40%"].iloc[0]
        assert split_row["Role"] == "closer"
        assert split_row["Processor Fee"] == "60.00"
        assert split_row["Basis Amount"] == "1940.00"

        [adjustment] = df[df["Type"] == "Adjustment (other)"].to_dict("records")
        assert adjustment["Commission"] == "-26.00"
        assert adjustment["Client"] == "Equipment advance"
