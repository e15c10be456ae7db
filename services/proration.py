"""Proration of mid-period plan changes.

Day-count convention: the change date is inclusive, the period end is
exclusive.  A change on the period end date therefore leaves 0 days to
prorate.  Amounts are rounded to centavos (half-up) and the net amount is
derived from the rounded components.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from services.billing_period import BillingPeriod, compute_billing_period
from services.errors import ValidationError
from utils import ZERO, money, safe_decimal


@dataclass(frozen=True)
class ProrationPreview:
    credit_amount: Decimal
    charge_amount: Decimal
    net_amount: Decimal
    days_remaining: int
    days_in_period: int
    period: BillingPeriod
    description: str

    def to_dict(self) -> dict:
        return {
            "credit_amount": str(self.credit_amount),
            "charge_amount": str(self.charge_amount),
            "net_amount": str(self.net_amount),
            "days_remaining": self.days_remaining,
            "days_in_period": self.days_in_period,
            "period_start": self.period.start.isoformat(),
            "period_end": self.period.end.isoformat(),
            "description": self.description,
        }


def _fee(value, label: str) -> Decimal:
    fee = safe_decimal(value)
    if fee is None:
        raise ValidationError(f"{label} is not a valid amount")
    if fee < 0:
        raise ValidationError(f"{label} cannot be negative")
    return fee


def prorate(fee, days: int, days_in_period: int) -> Decimal:
    """Return *fee* scaled to *days* out of *days_in_period*, in centavos."""
    if days_in_period <= 0:
        raise ValidationError("Billing period has no days")
    if days < 0:
        raise ValidationError("Cannot prorate a negative number of days")
    return money(Decimal(str(fee)) * days / days_in_period)


def preview_plan_change(
    old_fee,
    new_fee,
    anchor,
    change_date: datetime.date,
    reference_date: Optional[datetime.date] = None,
) -> ProrationPreview:
    """Compute the credit, charge and net amount of switching plans on *change_date*.

    The billing period is derived from *reference_date* (defaults to the
    change date).  A change date outside ``[period.start, period.end]``
    raises ``ValidationError``.
    """
    old = _fee(old_fee, "Current monthly fee")
    new = _fee(new_fee, "New monthly fee")
    period = compute_billing_period(anchor, reference_date or change_date)

    if change_date < period.start or change_date > period.end:
        raise ValidationError(
            f"Change date {change_date.isoformat()} is outside the billing period "
            f"{period.start.isoformat()} to {period.end.isoformat()}"
        )

    days_remaining = (period.end - change_date).days
    days_in_period = period.days_in_period
    credit = prorate(old, days_remaining, days_in_period)
    charge = prorate(new, days_remaining, days_in_period)
    net = charge - credit

    if net > ZERO:
        description = f"Upgrade charge for {days_remaining} of {days_in_period} days"
    elif net < ZERO:
        description = f"Downgrade credit for {days_remaining} of {days_in_period} days"
    else:
        description = "No adjustment"

    return ProrationPreview(
        credit_amount=credit,
        charge_amount=charge,
        net_amount=net,
        days_remaining=days_remaining,
        days_in_period=days_in_period,
        period=period,
        description=description,
    )
