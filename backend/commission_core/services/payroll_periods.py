"""Payroll calendar.

Periods are fixed-length windows counted from a configured anchor date
(default: bi-weekly, anchored on Monday 2024-12-16). A period is paid on the
first configured weekday on or after its last day (default Friday), so the
anchor period Dec 16 - Dec 29, 2024 pays out on Jan 3, 2025.

Everything here is a pure function of the calendar configuration and the
input date.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List, Union

from dateutil.relativedelta import relativedelta, MO, TU, WE, TH, FR, SA, SU

from commission_core.core.config import Settings, settings as default_settings

WEEKDAYS = (MO, TU, WE, TH, FR, SA, SU)


@dataclass(frozen=True)
class PayrollPeriod:
    start: date
    end: date
    payout_date: date

    @property
    def id(self) -> str:
        return self.start.isoformat()

    @property
    def label(self) -> str:
        return f"{self.start:%b} {self.start.day} - {self.end:%b} {self.end.day}, {self.end.year}"

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass(frozen=True)
class PayrollCalendar:
    anchor_date: date = date(2024, 12, 16)
    period_length_days: int = 14
    payout_weekday: int = 4  # Friday

    def __post_init__(self):
        if self.period_length_days < 1:
            raise ValueError("period_length_days must be at least 1")
        if not 0 <= self.payout_weekday <= 6:
            raise ValueError("payout_weekday must be 0 (Monday) through 6 (Sunday)")

    @classmethod
    def from_settings(cls, s: Settings = None) -> "PayrollCalendar":
        s = s or default_settings
        return cls(
            anchor_date=s.PAYROLL_ANCHOR_DATE,
            period_length_days=s.PAYROLL_PERIOD_LENGTH_DAYS,
            payout_weekday=s.PAYROLL_PAYOUT_WEEKDAY,
        )

    def period_start(self, day: Union[date, datetime]) -> date:
        if isinstance(day, datetime):
            day = day.date()
        # Floor division keeps dates before the anchor in the right bucket
        cycles = (day - self.anchor_date).days // self.period_length_days
        return self.anchor_date + timedelta(days=cycles * self.period_length_days)

    def period_for(self, day: Union[date, datetime]) -> PayrollPeriod:
        start = self.period_start(day)
        end = start + timedelta(days=self.period_length_days - 1)
        payout = end + relativedelta(weekday=WEEKDAYS[self.payout_weekday])
        return PayrollPeriod(start=start, end=end, payout_date=payout)

    def periods_around(self, today: date, back: int = 12, forward: int = 4) -> List[PayrollPeriod]:
        """Recent and upcoming periods around ``today``, newest first."""
        current = self.period_start(today)
        periods = [
            self.period_for(current + timedelta(days=i * self.period_length_days))
            for i in range(-back, forward + 1)
        ]
        return sorted(periods, key=lambda p: p.start, reverse=True)
