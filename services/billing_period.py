"""Billing period calculator.

A billing period is the half-open date range ``[start, end)`` between two
consecutive anchor dates.  Anchor dates are clamped to the last day of short
months, so a "30th" anchor falls on Feb 28 (or 29) in February.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass

from services.errors import ValidationError
from utils import add_months, last_day_of_month

ANCHOR_DAYS = {"15th": 15, "30th": 30}


@dataclass(frozen=True)
class BillingPeriod:
    start: datetime.date
    end: datetime.date
    anchor_day: int

    @property
    def days_in_period(self) -> int:
        return (self.end - self.start).days

    def contains(self, day: datetime.date) -> bool:
        return self.start <= day < self.end


@dataclass(frozen=True)
class BillingDates:
    """Calendar of one billing cycle for an anchor in a given month."""

    period_start: datetime.date
    period_end: datetime.date
    due_date: datetime.date
    disconnection_date: datetime.date
    generation_date: datetime.date


def parse_anchor(anchor) -> int:
    """Return the anchor day (15 or 30) for ``"15th"``/``"30th"``/``15``/``30``."""
    if isinstance(anchor, str):
        key = anchor.strip().lower()
        if key in ANCHOR_DAYS:
            return ANCHOR_DAYS[key]
        if key.isdigit():
            anchor = int(key)
    if isinstance(anchor, int) and not isinstance(anchor, bool) and anchor in (15, 30):
        return anchor
    raise ValidationError(f"Invalid billing anchor: {anchor!r}")


def anchor_date(anchor_day: int, year: int, month: int) -> datetime.date:
    """Anchor date of *year*/*month*, clamped to the month's last day."""
    return datetime.date(year, month, min(anchor_day, last_day_of_month(year, month)))


def compute_billing_period(anchor, reference_date: datetime.date) -> BillingPeriod:
    """Return the billing period containing *reference_date*.

    If the reference date falls before this month's anchor date the period
    ends on it; otherwise the period ends on next month's anchor date.  The
    period always starts on the anchor date one month before its end.
    """
    day = parse_anchor(anchor)
    this_anchor = anchor_date(day, reference_date.year, reference_date.month)
    if reference_date < this_anchor:
        end = this_anchor
    else:
        year, month = add_months(reference_date.year, reference_date.month, 1)
        end = anchor_date(day, year, month)
    prev_year, prev_month = add_months(end.year, end.month, -1)
    start = anchor_date(day, prev_year, prev_month)
    return BillingPeriod(start=start, end=end, anchor_day=day)


def billing_schedule(anchor, year: int, month: int) -> BillingDates:
    """Generation, due and disconnection dates of the cycle due in *year*/*month*.

    15th anchor: generated on the 10th, due on the 15th, disconnected on the
    20th.  30th anchor: generated on the 25th, due on the 30th (clamped),
    disconnected on the 5th of the following month.
    """
    day = parse_anchor(anchor)
    due = anchor_date(day, year, month)
    prev_year, prev_month = add_months(year, month, -1)
    if day == 15:
        generation = datetime.date(year, month, 10)
        disconnection = datetime.date(year, month, 20)
    else:
        generation = datetime.date(year, month, min(25, due.day))
        next_year, next_month = add_months(year, month, 1)
        disconnection = datetime.date(next_year, next_month, 5)
    return BillingDates(
        period_start=anchor_date(day, prev_year, prev_month),
        period_end=due,
        due_date=due,
        disconnection_date=disconnection,
        generation_date=generation,
    )
