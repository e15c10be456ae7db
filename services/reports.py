"""Dashboard and customer reports."""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from sqlalchemy import func

from extensions import db
from models import (
    Customer,
    Expense,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    Subscription,
)
from services.errors import NotFound
from utils import ZERO, add_months, money

logger = logging.getLogger(__name__)


def _month_bounds(year: int, month: int) -> tuple[datetime.date, datetime.date]:
    next_year, next_month = add_months(year, month, 1)
    return datetime.date(year, month, 1), datetime.date(next_year, next_month, 1)


def dashboard_summary(year: int, month: int, business_unit_id: Optional[int] = None) -> dict:
    """Collected revenue, expenses and receivables for one month."""
    start, end = _month_bounds(year, month)

    collected = db.session.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
        Payment.status == PaymentStatus.APPROVED,
        Payment.mode != "Credit",
        Payment.settlement_date >= start,
        Payment.settlement_date < end,
    )
    expenses = db.session.query(func.coalesce(func.sum(Expense.amount * Expense.quantity), 0)).filter(
        Expense.expense_date >= start,
        Expense.expense_date < end,
    )
    unpaid = db.session.query(
        func.count(Invoice.id), func.coalesce(func.sum(Invoice.amount_due), 0)
    ).filter(Invoice.payment_status != InvoiceStatus.PAID)
    active = Subscription.query.filter(Subscription.active.is_(True))
    pending = Payment.query.filter(Payment.status == PaymentStatus.PENDING)

    if business_unit_id:
        collected = collected.join(Subscription, Payment.subscription_id == Subscription.id).filter(
            Subscription.business_unit_id == business_unit_id
        )
        expenses = expenses.filter(Expense.business_unit_id == business_unit_id)
        unpaid = unpaid.join(Subscription, Invoice.subscription_id == Subscription.id).filter(
            Subscription.business_unit_id == business_unit_id
        )
        active = active.filter(Subscription.business_unit_id == business_unit_id)
        pending = pending.join(Subscription, Payment.subscription_id == Subscription.id).filter(
            Subscription.business_unit_id == business_unit_id
        )

    revenue = money(collected.scalar() or ZERO)
    expense_total = money(expenses.scalar() or ZERO)
    unpaid_count, unpaid_total = unpaid.one()
    return {
        "year": year,
        "month": month,
        "business_unit_id": business_unit_id,
        "collected": str(revenue),
        "expenses": str(expense_total),
        "net": str(revenue - expense_total),
        "unpaid_invoices": unpaid_count,
        "unpaid_total": str(money(unpaid_total or ZERO)),
        "active_subscriptions": active.count(),
        "pending_verifications": pending.count(),
    }


def payment_history(subscription_id: int) -> list[dict]:
    subscription = db.session.get(Subscription, subscription_id)
    if not subscription:
        raise NotFound(f"Subscription {subscription_id} not found")
    payments = (
        Payment.query.filter_by(subscription_id=subscription_id)
        .order_by(Payment.settlement_date.desc(), Payment.id.desc())
        .all()
    )
    return [
        {
            "id": p.id,
            "invoice_id": p.invoice_id,
            "amount": str(money(p.amount)),
            "claimed_amount": str(money(p.claimed_amount)) if p.claimed_amount is not None else None,
            "mode": p.mode,
            "status": p.status.value,
            "settlement_date": p.settlement_date.isoformat(),
            "reference": p.reference,
        }
        for p in payments
    ]


def customer_summary(customer_id: int) -> dict:
    """Per-subscription totals invoiced, paid and outstanding for a customer."""
    customer = db.session.get(Customer, customer_id)
    if not customer:
        raise NotFound(f"Customer {customer_id} not found")

    subscriptions = []
    for sub in customer.subscriptions:
        invoiced = money(
            db.session.query(func.coalesce(func.sum(Invoice.amount_due), 0))
            .filter(Invoice.subscription_id == sub.id)
            .scalar() or ZERO
        )
        paid = money(
            db.session.query(func.coalesce(func.sum(Payment.amount), 0))
            .filter(Payment.subscription_id == sub.id, Payment.status == PaymentStatus.APPROVED)
            .scalar() or ZERO
        )
        subscriptions.append({
            "subscription_id": sub.id,
            "plan": sub.plan.name,
            "business_unit": sub.business_unit.name,
            "active": sub.active,
            "total_invoiced": str(invoiced),
            "total_paid": str(paid),
            "balance": str(money(sub.balance)),
        })
    return {
        "customer_id": customer.id,
        "name": customer.name,
        "mobile_number": customer.mobile_number,
        "active": customer.is_active,
        "subscriptions": subscriptions,
    }
