"""Payment reconciliation.

Applies settled payments to invoices, derives invoice payment status and
moves the subscription balance through the ledger.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import func

from extensions import db
from models import (
    VALID_PAYMENT_MODES,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    Subscription,
)
from services.errors import NotFound, ValidationError
from services.ledger import post_entry
from services.transaction import atomic
from utils import ZERO, money, safe_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationResult:
    payment_id: int
    new_status: Optional[InvoiceStatus]
    balance_delta: Decimal
    new_balance: Decimal
    applied: bool = True

    def to_dict(self) -> dict:
        return {
            "payment_id": self.payment_id,
            "new_status": self.new_status.value if self.new_status else None,
            "balance_delta": str(self.balance_delta),
            "new_balance": str(self.new_balance),
            "applied": self.applied,
        }


def determine_payment_status(total_paid, amount_due) -> InvoiceStatus:
    total_paid = money(total_paid or 0)
    amount_due = money(amount_due or 0)
    if total_paid >= amount_due:
        return InvoiceStatus.PAID
    if total_paid > ZERO:
        return InvoiceStatus.PARTIALLY_PAID
    return InvoiceStatus.UNPAID


def validate_amount(amount) -> Decimal:
    value = safe_decimal(amount)
    if value is None:
        raise ValidationError("Payment amount is not a valid number")
    if value <= ZERO:
        raise ValidationError("Payment amount must be greater than zero")
    return money(value)


def settled_total(invoice_id: int, excluding_payment_id: Optional[int] = None) -> Decimal:
    """Sum of approved payments on an invoice (optionally leaving one payment out)."""
    query = db.session.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
        Payment.invoice_id == invoice_id,
        Payment.status == PaymentStatus.APPROVED,
    )
    if excluding_payment_id is not None:
        query = query.filter(Payment.id != excluding_payment_id)
    return money(query.scalar() or ZERO)


def refresh_invoice_status(invoice: Invoice) -> InvoiceStatus:
    """Re-derive an invoice's status from its settled payments.

    Pending claims only show as Pending Verification while nothing has been
    settled on the invoice yet.
    """
    db.session.flush()
    settled = settled_total(invoice.id)
    status = determine_payment_status(settled, invoice.amount_due)
    if settled <= ZERO and status is InvoiceStatus.UNPAID:
        pending = Payment.query.filter_by(
            invoice_id=invoice.id, status=PaymentStatus.PENDING
        ).count()
        if pending:
            status = InvoiceStatus.PENDING_VERIFICATION
    invoice.payment_status = status
    return status


def spillover(prior_paid: Decimal, amount: Decimal, amount_due) -> Decimal:
    """Part of *amount* exceeding what was still due, as a non-positive delta."""
    overpaid = prior_paid + amount - money(amount_due)
    if overpaid <= ZERO:
        return ZERO
    return -min(amount, overpaid)


def settle_payment(payment: Payment, subscription: Subscription) -> Decimal:
    """Post an approved payment to the ledger and update its invoice.

    Spillover is measured against every other payment already approved on
    the invoice, whatever order they were submitted in.  Returns the
    balance delta and stores it on the payment.  Does not commit.
    """
    if payment.invoice is not None:
        prior = settled_total(payment.invoice_id, excluding_payment_id=payment.id)
        delta = spillover(prior, money(payment.amount), payment.invoice.amount_due)
    else:
        delta = -money(payment.amount)
    payment.balance_delta = delta
    post_entry(
        subscription,
        "payment",
        -money(payment.amount),
        invoice_id=payment.invoice_id,
        payment_id=payment.id,
        description=f"{payment.mode} payment",
    )
    if payment.invoice is not None:
        refresh_invoice_status(payment.invoice)
    return delta


def _find_replay(
    reference: Optional[str],
    subscription_id: int,
    invoice_id: Optional[int],
    any_invoice: bool = False,
) -> Optional[Payment]:
    """The approved payment already applied under *reference*, if any.

    A reference held by a pending or rejected claim, or by a payment on
    another invoice (unless *any_invoice*), cannot be reused.
    """
    if not reference:
        return None
    existing = Payment.query.filter_by(reference=reference).first()
    if existing is None:
        return None
    if (
        existing.status is not PaymentStatus.APPROVED
        or existing.subscription_id != subscription_id
        or (not any_invoice and existing.invoice_id != invoice_id)
    ):
        raise ValidationError(
            f"Reference {reference} is already used by payment {existing.id} "
            f"({existing.status.value})"
        )
    return existing


def _replay(payment: Payment) -> ReconciliationResult:
    """Result of a payment that was already applied under the same reference."""
    if payment.balance_delta is not None:
        delta = money(payment.balance_delta)
    elif payment.invoice is None:
        delta = -money(payment.amount)
    else:
        delta = ZERO
    status = payment.invoice.payment_status if payment.invoice is not None else None
    logger.info("Payment reference %s already applied as payment %s", payment.reference, payment.id)
    return ReconciliationResult(
        payment_id=payment.id,
        new_status=status,
        balance_delta=delta,
        new_balance=money(payment.subscription.balance),
        applied=False,
    )


def apply_payment(
    invoice_id: int,
    amount,
    mode: str = "Cash",
    settlement_date: Optional[datetime.date] = None,
    notes: Optional[str] = None,
    reference: Optional[str] = None,
) -> ReconciliationResult:
    """Apply a settled payment to an invoice and commit.

    Re-applying with a *reference* that was already used returns the
    original result and changes nothing.
    """
    amount = validate_amount(amount)
    if mode not in VALID_PAYMENT_MODES:
        raise ValidationError(f"Invalid payment mode: {mode}")

    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise NotFound(f"Invoice {invoice_id} not found")
    subscription = invoice.subscription

    existing = _find_replay(reference, subscription.id, invoice.id)
    if existing is not None:
        return _replay(existing)

    with atomic("Apply payment"):
        payment = Payment(
            subscription=subscription,
            invoice=invoice,
            amount=amount,
            mode=mode,
            status=PaymentStatus.APPROVED,
            settlement_date=settlement_date or datetime.date.today(),
            reference=reference,
            notes=notes,
        )
        db.session.add(payment)
        db.session.flush()
        delta = settle_payment(payment, subscription)
        status = invoice.payment_status

    logger.info(
        "Applied %s payment %s of %s to invoice %s (%s)",
        mode, payment.id, amount, invoice.id, status.value,
    )
    return ReconciliationResult(
        payment_id=payment.id,
        new_status=status,
        balance_delta=delta,
        new_balance=money(subscription.balance),
    )


def oldest_open_invoice(subscription_id: int) -> Optional[Invoice]:
    return (
        Invoice.query.filter(
            Invoice.subscription_id == subscription_id,
            Invoice.payment_status != InvoiceStatus.PAID,
        )
        .order_by(Invoice.due_date.asc(), Invoice.id.asc())
        .first()
    )


def record_payment(
    subscription_id: int,
    amount,
    mode: str = "Cash",
    invoice_id: Optional[int] = None,
    settlement_date: Optional[datetime.date] = None,
    notes: Optional[str] = None,
    reference: Optional[str] = None,
) -> ReconciliationResult:
    """Record a payment collected for a subscription.

    Applies to *invoice_id* or the oldest open invoice; with no open invoice
    the whole amount becomes credit on the subscription.
    """
    subscription = db.session.get(Subscription, subscription_id)
    if not subscription:
        raise NotFound(f"Subscription {subscription_id} not found")

    # A replay may arrive after its invoice was settled, so match it before
    # picking the oldest open invoice
    existing = _find_replay(reference, subscription.id, invoice_id, any_invoice=invoice_id is None)
    if existing is not None:
        return _replay(existing)

    if invoice_id is not None:
        invoice = db.session.get(Invoice, invoice_id)
        if not invoice or invoice.subscription_id != subscription.id:
            raise NotFound(f"Invoice {invoice_id} not found for subscription {subscription_id}")
    else:
        invoice = oldest_open_invoice(subscription.id)

    if invoice is not None:
        return apply_payment(
            invoice.id, amount, mode=mode, settlement_date=settlement_date,
            notes=notes, reference=reference,
        )

    amount = validate_amount(amount)
    if mode not in VALID_PAYMENT_MODES:
        raise ValidationError(f"Invalid payment mode: {mode}")

    with atomic("Record payment"):
        payment = Payment(
            subscription=subscription,
            amount=amount,
            mode=mode,
            status=PaymentStatus.APPROVED,
            settlement_date=settlement_date or datetime.date.today(),
            reference=reference,
            notes=notes,
        )
        db.session.add(payment)
        db.session.flush()
        delta = settle_payment(payment, subscription)

    logger.info("Recorded %s as credit on subscription %s", amount, subscription.id)
    return ReconciliationResult(
        payment_id=payment.id,
        new_status=None,
        balance_delta=delta,
        new_balance=money(subscription.balance),
    )
