"""Invoice business logic: monthly generation, activation and disconnection
invoices, reminders and the daily billing schedule."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from flask import current_app

from extensions import db
from models import (
    BusinessUnit,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    Subscription,
)
from services.billing_period import (
    BillingDates,
    billing_schedule,
    compute_billing_period,
    parse_anchor,
)
from services.errors import BillingError, NotFound, ValidationError
from services.ledger import post_entry
from services.notifications import notify, notify_many
from services.numbering import generate_invoice_number
from services.proration import prorate
from services.reconciliation import refresh_invoice_status
from services.transaction import atomic
from sms import (
    disconnection_warning_message,
    due_date_reminder_message,
    invoice_generated_message,
)
from utils import ZERO, add_months, money

logger = logging.getLogger(__name__)

OPEN_STATUSES = (InvoiceStatus.UNPAID, InvoiceStatus.PARTIALLY_PAID)


@dataclass
class GenerationResult:
    generated: int = 0
    skipped: int = 0
    sms_sent: int = 0
    errors: list[str] = field(default_factory=list)
    invoices: list[dict] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "generated": self.generated,
            "skipped": self.skipped,
            "sms_sent": self.sms_sent,
            "errors": self.errors,
            "invoices": self.invoices,
        }


def _create_invoice(
    subscription: Subscription,
    kind: str,
    period_start: datetime.date,
    period_end: datetime.date,
    due_date: datetime.date,
    amount: Decimal,
    notes: Optional[str] = None,
) -> Invoice:
    """Insert an invoice and post it to the ledger.  Does not commit."""
    invoice = Invoice(
        invoice_number=generate_invoice_number(due_date),
        subscription=subscription,
        kind=kind,
        period_start=period_start,
        period_end=period_end,
        due_date=due_date,
        amount_due=money(amount),
        payment_status=InvoiceStatus.PAID if money(amount) == ZERO else InvoiceStatus.UNPAID,
        notes=notes,
    )
    db.session.add(invoice)
    db.session.flush()
    if invoice.amount_due > ZERO:
        post_entry(
            subscription, "invoice", invoice.amount_due,
            invoice_id=invoice.id,
            description=f"{kind.capitalize()} invoice {invoice.invoice_number}",
        )
    return invoice


def _apply_existing_credit(subscription: Subscription, invoice: Invoice, credit: Decimal) -> Decimal:
    """Settle part of *invoice* from credit already on the ledger.

    The credit was posted when it arose, so the settlement gets no ledger
    entry of its own.  Returns the amount used.
    """
    used = min(credit, money(invoice.amount_due))
    if used <= ZERO:
        return ZERO
    db.session.add(Payment(
        subscription=subscription,
        invoice=invoice,
        amount=used,
        mode="Credit",
        status=PaymentStatus.APPROVED,
        settlement_date=datetime.date.today(),
        notes="Applied from account credit",
    ))
    refresh_invoice_status(invoice)
    return used


def _is_first_subscription(subscription: Subscription) -> bool:
    siblings = sorted(
        subscription.customer.subscriptions,
        key=lambda s: (s.date_installed or datetime.date.max, s.id),
    )
    return bool(siblings) and siblings[0].id == subscription.id


def _already_invoiced(subscription: Subscription, dates: BillingDates) -> bool:
    return (
        Invoice.query.filter(
            Invoice.subscription_id == subscription.id,
            Invoice.kind.in_(("monthly", "activation")),
            Invoice.period_end == dates.period_end,
        ).first()
        is not None
    )


def _monthly_amount(subscription: Subscription, dates: BillingDates) -> tuple[Decimal, bool]:
    fee = money(subscription.plan.monthly_fee)
    installed = subscription.date_installed
    has_history = Invoice.query.filter_by(subscription_id=subscription.id).first() is not None
    if installed and not has_history and installed > dates.period_start:
        days = (dates.period_end - installed).days
        return prorate(fee, days, (dates.period_end - dates.period_start).days), True
    return fee, False


def generate_invoices_for_business_unit(
    business_unit_id: int,
    year: int,
    month: int,
    send_sms: bool = True,
) -> GenerationResult:
    """Create this cycle's monthly invoices for every active subscription of a unit.

    Subscriptions already invoiced for the period, or installed after it
    ends, are skipped.  Each subscription is committed on its own so one
    failure does not block the rest.
    """
    business_unit = db.session.get(BusinessUnit, business_unit_id)
    if not business_unit:
        raise NotFound(f"Business unit {business_unit_id} not found")
    if not 1 <= month <= 12:
        raise ValidationError(f"Invalid month: {month}")

    dates = billing_schedule(business_unit.billing_anchor, year, month)
    discount = money(current_app.config["APP_CONFIG"].referral_discount or 0)
    result = GenerationResult()
    messages: list[tuple[str, str]] = []

    subscriptions = (
        Subscription.query.filter_by(business_unit_id=business_unit.id, active=True)
        .order_by(Subscription.date_installed.asc(), Subscription.id.asc())
        .all()
    )
    for subscription in subscriptions:
        if _already_invoiced(subscription, dates) or (
            subscription.date_installed and subscription.date_installed >= dates.period_end
        ):
            result.skipped += 1
            continue

        customer = subscription.customer
        try:
            with atomic(f"Invoice subscription {subscription.id}"):
                amount, is_prorated = _monthly_amount(subscription, dates)
                notes = []
                if is_prorated:
                    notes.append(f"Prorated from installation on {subscription.date_installed.isoformat()}")
                if (
                    discount > ZERO
                    and customer.referrer_id
                    and not subscription.referral_credit_applied
                    and _is_first_subscription(subscription)
                ):
                    amount = max(ZERO, amount - discount)
                    subscription.referral_credit_applied = True
                    notes.append(f"Referral discount {discount}")

                credit = -money(subscription.balance) if money(subscription.balance) < ZERO else ZERO
                invoice = _create_invoice(
                    subscription, "monthly", dates.period_start, dates.period_end,
                    dates.due_date, amount, notes="; ".join(notes) or None,
                )
                used = _apply_existing_credit(subscription, invoice, credit) if credit > ZERO else ZERO
                outstanding = money(invoice.amount_due) - used
                invoice_number = invoice.invoice_number
        except BillingError as e:
            result.errors.append(f"Subscription {subscription.id}: {e.message}")
            continue

        result.generated += 1
        result.invoices.append({
            "subscription_id": subscription.id,
            "customer_name": customer.name,
            "invoice_number": invoice_number,
            "amount_due": str(money(amount)),
            "is_prorated": is_prorated,
        })
        if send_sms and outstanding > ZERO:
            messages.append((
                subscription.mobile_number or customer.mobile_number,
                invoice_generated_message(
                    customer.name, outstanding, dates.due_date.strftime("%b %d, %Y"), invoice_number
                ),
            ))

    if send_sms:
        result.sms_sent = notify_many(messages)
    logger.info(
        "Business unit %s %04d-%02d: %s generated, %s skipped, %s errors",
        business_unit.name, year, month, result.generated, result.skipped, len(result.errors),
    )
    return result


def _load_subscription(subscription_id: int) -> Subscription:
    subscription = db.session.get(Subscription, subscription_id)
    if not subscription:
        raise NotFound(f"Subscription {subscription_id} not found")
    return subscription


def create_activation_invoice(subscription: Subscription, activation_date: datetime.date) -> Invoice:
    """Prorated invoice from *activation_date* to the next anchor date.  Does not commit."""
    period = compute_billing_period(subscription.billing_anchor, activation_date)
    days = (period.end - activation_date).days
    amount = prorate(subscription.plan.monthly_fee, days, period.days_in_period)
    return _create_invoice(
        subscription, "activation", activation_date, period.end, period.end, amount,
        notes=f"Activation: {days} of {period.days_in_period} days",
    )


def create_disconnection_invoice(subscription: Subscription, disconnection_date: datetime.date) -> Invoice:
    """Prorated invoice from the end of the last invoiced period to *disconnection_date*.

    Does not commit.
    """
    last = (
        Invoice.query.filter_by(subscription_id=subscription.id)
        .order_by(Invoice.period_end.desc(), Invoice.id.desc())
        .first()
    )
    if last is None:
        raise ValidationError("No previous invoice found; cannot determine the billing period")
    days = (disconnection_date - last.period_end).days
    if days <= 0:
        raise ValidationError("No days to bill for the disconnection period")
    period = compute_billing_period(subscription.billing_anchor, last.period_end)
    amount = prorate(subscription.plan.monthly_fee, days, period.days_in_period)
    return _create_invoice(
        subscription, "disconnection", last.period_end, disconnection_date,
        disconnection_date, amount,
        notes=f"Service until disconnection: {days} of {period.days_in_period} days",
    )


def generate_activation_invoice(subscription_id: int, activation_date: datetime.date) -> Invoice:
    """Create and commit an activation invoice, then text the customer."""
    subscription = _load_subscription(subscription_id)
    with atomic("Activation invoice"):
        invoice = create_activation_invoice(subscription, activation_date)
    notify_invoice(subscription, invoice)
    return invoice


def generate_disconnection_invoice(subscription_id: int, disconnection_date: datetime.date) -> Invoice:
    subscription = _load_subscription(subscription_id)
    with atomic("Disconnection invoice"):
        invoice = create_disconnection_invoice(subscription, disconnection_date)
    notify_invoice(subscription, invoice)
    return invoice


def notify_invoice(subscription: Subscription, invoice: Invoice) -> None:
    customer = subscription.customer
    notify(
        subscription.mobile_number or customer.mobile_number,
        invoice_generated_message(
            customer.name, invoice.amount_due,
            invoice.due_date.strftime("%b %d, %Y"), invoice.invoice_number,
        ),
    )


def _open_invoices(business_unit_id: int):
    return (
        Invoice.query.join(Subscription)
        .filter(
            Subscription.business_unit_id == business_unit_id,
            Invoice.payment_status.in_(OPEN_STATUSES),
        )
    )


def send_due_date_reminders(business_unit_id: int, today: datetime.date) -> int:
    """Remind customers whose open invoices are due *today*; returns SMS sent."""
    messages = []
    for invoice in _open_invoices(business_unit_id).filter(Invoice.due_date == today).all():
        customer = invoice.subscription.customer
        messages.append((
            invoice.subscription.mobile_number or customer.mobile_number,
            due_date_reminder_message(customer.name, invoice.amount_due, today.strftime("%b %d, %Y")),
        ))
    return notify_many(messages)


def send_disconnection_warnings(business_unit_id: int, today: datetime.date) -> int:
    """Warn customers with overdue open invoices; returns SMS sent."""
    messages = []
    seen: set[int] = set()
    for invoice in _open_invoices(business_unit_id).filter(Invoice.due_date < today).all():
        subscription = invoice.subscription
        if subscription.id in seen or not subscription.active:
            continue
        seen.add(subscription.id)
        customer = subscription.customer
        messages.append((
            subscription.mobile_number or customer.mobile_number,
            disconnection_warning_message(
                customer.name, money(subscription.balance), today.strftime("%b %d, %Y")
            ),
        ))
    return notify_many(messages)


# ---------------------------------------------------------------------------
# Daily schedule
# ---------------------------------------------------------------------------

@dataclass
class TodaysTasks:
    local_date: datetime.date
    generate_invoices: list[str] = field(default_factory=list)
    due_reminders: list[str] = field(default_factory=list)
    disconnection_warnings: list[str] = field(default_factory=list)


def local_today(now: Optional[datetime.datetime] = None, offset_hours: Optional[int] = None) -> datetime.date:
    """Calendar date at the billing office for the UTC instant *now*."""
    if offset_hours is None:
        offset_hours = current_app.config["APP_CONFIG"].timezone_offset_hours
    now = now or datetime.datetime.now(datetime.timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return (now + datetime.timedelta(hours=offset_hours)).date()


def get_todays_tasks(now: Optional[datetime.datetime] = None, offset_hours: Optional[int] = None) -> TodaysTasks:
    """Which anchors generate, remind or warn today (office local time)."""
    today = local_today(now, offset_hours)
    tasks = TodaysTasks(local_date=today)
    for anchor in ("15th", "30th"):
        dates = billing_schedule(anchor, today.year, today.month)
        if today == dates.generation_date:
            tasks.generate_invoices.append(anchor)
        if today == dates.due_date:
            tasks.due_reminders.append(anchor)
        prev_year, prev_month = add_months(today.year, today.month, -1)
        previous = billing_schedule(anchor, prev_year, prev_month)
        if today in (dates.disconnection_date, previous.disconnection_date):
            tasks.disconnection_warnings.append(anchor)
    return tasks


def run_scheduled_tasks(now: Optional[datetime.datetime] = None) -> dict:
    """Run today's generation, reminder and warning tasks for every active unit."""
    tasks = get_todays_tasks(now)
    today = tasks.local_date
    results = {
        "date": today.isoformat(),
        "tasks_executed": [],
        "invoice_generation": [],
        "due_reminders": [],
        "disconnection_warnings": [],
        "errors": [],
    }
    units = BusinessUnit.query.filter_by(is_active=True).order_by(BusinessUnit.id).all()
    for unit in units:
        anchor = f"{parse_anchor(unit.billing_anchor)}th"
        try:
            if anchor in tasks.generate_invoices:
                generation = generate_invoices_for_business_unit(unit.id, today.year, today.month)
                results["invoice_generation"].append({"business_unit": unit.name, **generation.to_dict()})
                results["tasks_executed"].append(f"generate_invoices:{unit.name}")
            if anchor in tasks.due_reminders:
                sent = send_due_date_reminders(unit.id, today)
                results["due_reminders"].append({"business_unit": unit.name, "sent": sent})
                results["tasks_executed"].append(f"due_reminders:{unit.name}")
            if anchor in tasks.disconnection_warnings:
                sent = send_disconnection_warnings(unit.id, today)
                results["disconnection_warnings"].append({"business_unit": unit.name, "sent": sent})
                results["tasks_executed"].append(f"disconnection_warnings:{unit.name}")
        except BillingError as e:
            logger.error("Scheduled task failed for business unit %s: %s", unit.name, e)
            results["errors"].append(f"{unit.name}: {e.message}")
    logger.info("Scheduled tasks for %s: %s", today.isoformat(), results["tasks_executed"] or "none")
    return results
