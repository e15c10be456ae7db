"""Mid-period plan changes.

The adjustment (prorated invoice or credit), the plan-change history row and
the plan switch are committed together.  The router profile sync runs only
after that commit; its failure is reported as a warning and never undoes the
billing change.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Optional

from extensions import db
from models import Invoice, InvoiceStatus, LedgerEntry, Plan, PlanChange, Subscription
from services.errors import BillingError, NotFound, ValidationError
from services.ledger import post_entry
from services.numbering import generate_invoice_number
from services.proration import ProrationPreview, preview_plan_change
from services.router_sync import sync_plan_profile
from services.transaction import atomic
from utils import ZERO

logger = logging.getLogger(__name__)


@dataclass
class PlanChangeResult:
    success: bool
    prorated_invoice: Optional[Invoice] = None
    credit_entry: Optional[LedgerEntry] = None
    preview: Optional[ProrationPreview] = None
    plan_change_id: Optional[int] = None
    warning: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"success": self.success}
        if self.preview is not None:
            data["preview"] = self.preview.to_dict()
        if self.prorated_invoice is not None:
            data["prorated_invoice"] = {
                "id": self.prorated_invoice.id,
                "invoice_number": self.prorated_invoice.invoice_number,
                "amount_due": str(self.prorated_invoice.amount_due),
                "due_date": self.prorated_invoice.due_date.isoformat(),
            }
        if self.credit_entry is not None:
            data["credit_entry"] = {
                "id": self.credit_entry.id,
                "amount": str(self.credit_entry.amount),
            }
        if self.plan_change_id is not None:
            data["plan_change_id"] = self.plan_change_id
        if self.warning:
            data["warning"] = self.warning
        if self.error:
            data["error"] = self.error
            data["error_type"] = self.error_type
        return data


def _load(subscription_id: int, new_plan_id: int) -> tuple[Subscription, Plan, Plan]:
    subscription = db.session.get(Subscription, subscription_id)
    if not subscription:
        raise NotFound(f"Subscription {subscription_id} not found")
    current_plan = subscription.plan
    if current_plan is None:
        raise NotFound(f"Current plan of subscription {subscription_id} not found")
    new_plan = db.session.get(Plan, new_plan_id)
    if not new_plan:
        raise NotFound(f"Plan {new_plan_id} not found")
    if new_plan.id == current_plan.id:
        raise ValidationError("Subscription is already on this plan")
    return subscription, current_plan, new_plan


def preview_subscription_plan_change(
    subscription_id: int,
    new_plan_id: int,
    change_date: Optional[datetime.date] = None,
) -> ProrationPreview:
    subscription, current_plan, new_plan = _load(subscription_id, new_plan_id)
    return preview_plan_change(
        current_plan.monthly_fee,
        new_plan.monthly_fee,
        subscription.billing_anchor,
        change_date or datetime.date.today(),
    )


def _apply_change(
    subscription: Subscription,
    current_plan: Plan,
    new_plan: Plan,
    change_date: datetime.date,
    preview: ProrationPreview,
) -> PlanChangeResult:
    result = PlanChangeResult(success=True, preview=preview)
    label = f"{current_plan.name} to {new_plan.name}"

    with atomic("Plan change"):
        if preview.net_amount > ZERO:
            invoice = Invoice(
                invoice_number=generate_invoice_number(change_date),
                subscription=subscription,
                kind="prorated",
                period_start=change_date,
                period_end=preview.period.end,
                due_date=preview.period.end,
                amount_due=preview.net_amount,
                payment_status=InvoiceStatus.UNPAID,
                notes=f"Plan change {label}: {preview.description}",
            )
            db.session.add(invoice)
            db.session.flush()
            post_entry(
                subscription, "invoice", preview.net_amount,
                invoice_id=invoice.id,
                description=f"Prorated plan change {label}",
            )
            result.prorated_invoice = invoice
        elif preview.net_amount < ZERO:
            result.credit_entry = post_entry(
                subscription, "credit", preview.net_amount,
                description=f"Plan change credit {label}",
            )

        change = PlanChange(
            subscription_id=subscription.id,
            old_plan_id=current_plan.id,
            new_plan_id=new_plan.id,
            old_monthly_fee=current_plan.monthly_fee,
            new_monthly_fee=new_plan.monthly_fee,
            change_date=change_date,
            period_start=preview.period.start,
            period_end=preview.period.end,
            days_remaining=preview.days_remaining,
            net_amount=preview.net_amount,
            invoice_id=result.prorated_invoice.id if result.prorated_invoice else None,
        )
        db.session.add(change)
        subscription.plan = new_plan
        db.session.flush()
        result.plan_change_id = change.id

    return result


def process_plan_change(
    subscription_id: int,
    new_plan_id: int,
    change_date: Optional[datetime.date] = None,
    router=None,
) -> PlanChangeResult:
    """Switch a subscription to *new_plan_id* with a prorated adjustment.

    Billing failures are returned as ``success=False`` with the error message
    and type; nothing is persisted in that case.
    """
    change_date = change_date or datetime.date.today()
    try:
        subscription, current_plan, new_plan = _load(subscription_id, new_plan_id)
        preview = preview_plan_change(
            current_plan.monthly_fee,
            new_plan.monthly_fee,
            subscription.billing_anchor,
            change_date,
        )
        result = _apply_change(subscription, current_plan, new_plan, change_date, preview)
    except BillingError as e:
        logger.warning("Plan change for subscription %s failed: %s", subscription_id, e)
        return PlanChangeResult(success=False, error=e.message, error_type=e.error_type)

    logger.info(
        "Subscription %s changed plan on %s (net %s)",
        subscription_id, change_date.isoformat(), preview.net_amount,
    )

    router_result = sync_plan_profile(subscription, new_plan, router=router)
    if router_result.success:
        if not router_result.skipped:
            db.session.commit()
    else:
        db.session.rollback()
        result.warning = f"Plan changed but router update failed: {router_result.error}"
    return result
