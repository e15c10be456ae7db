"""Manual (e-wallet) payment submission and admin verification.

Lifecycle: ``Pending -> Approved`` applies the payment to the balance,
``Pending -> Rejected`` leaves the balance untouched.  Both outcomes are
terminal.
"""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from extensions import db
from models import Invoice, Payment, PaymentStatus, Subscription, User
from services.errors import NotFound, ValidationError
from services.reconciliation import (
    ReconciliationResult,
    oldest_open_invoice,
    refresh_invoice_status,
    settle_payment,
    validate_amount,
)
from services.transaction import atomic
from utils import ZERO, money, utc_now

logger = logging.getLogger(__name__)


def _load_pending(payment_id: int, action: str) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise NotFound(f"Payment {payment_id} not found")
    if payment.status.is_terminal:
        raise ValidationError(
            f"Cannot {action} payment {payment_id}: it is already {payment.status.value}"
        )
    return payment


def _append_note(existing: Optional[str], note: Optional[str]) -> Optional[str]:
    if not note:
        return existing
    return f"{existing}\n{note}" if existing else note


def submit_manual_payment(
    subscription_id: int,
    amount,
    wallet_provider: str,
    reference_number: str,
    proof_url: Optional[str] = None,
    notes: Optional[str] = None,
) -> Payment:
    """Create a Pending e-wallet payment awaiting admin verification.

    The payment is linked to the oldest open invoice, or the latest invoice
    when all are paid.  The balance is not touched until approval.
    """
    amount = validate_amount(amount)
    wallet_provider = (wallet_provider or "").strip()
    reference_number = (reference_number or "").strip()
    if not wallet_provider:
        raise ValidationError("Wallet provider is required")
    if not reference_number:
        raise ValidationError("Reference number is required")

    subscription = db.session.get(Subscription, subscription_id)
    if not subscription:
        raise NotFound(f"Subscription {subscription_id} not found")
    if Payment.query.filter_by(reference=reference_number).first():
        raise ValidationError(f"Reference number {reference_number} was already submitted")

    invoice = oldest_open_invoice(subscription.id)
    if invoice is None:
        invoice = (
            Invoice.query.filter_by(subscription_id=subscription.id)
            .order_by(Invoice.due_date.desc(), Invoice.id.desc())
            .first()
        )

    with atomic("Submit payment"):
        payment = Payment(
            subscription=subscription,
            invoice=invoice,
            amount=amount,
            claimed_amount=amount,
            mode="E-Wallet",
            status=PaymentStatus.PENDING,
            settlement_date=datetime.date.today(),
            reference=reference_number,
            wallet_provider=wallet_provider,
            proof_url=proof_url,
            notes=notes,
        )
        db.session.add(payment)
        if invoice is not None:
            refresh_invoice_status(invoice)

    logger.info(
        "Submitted %s payment %s of %s for subscription %s",
        wallet_provider, payment.id, amount, subscription.id,
    )
    return payment


def approve_payment(
    payment_id: int,
    approved_amount=None,
    admin_notes: Optional[str] = None,
    reviewer: Optional[User] = None,
) -> ReconciliationResult:
    """Approve a pending payment, optionally correcting its amount, and apply it."""
    payment = _load_pending(payment_id, "approve")
    amount = validate_amount(approved_amount if approved_amount not in (None, "") else payment.amount)
    subscription = payment.subscription

    with atomic("Approve payment"):
        payment.amount = amount
        payment.status = PaymentStatus.APPROVED
        payment.notes = _append_note(payment.notes, admin_notes)
        payment.reviewed_by_id = reviewer.id if reviewer else None
        payment.reviewed_at = utc_now()
        db.session.flush()
        delta = settle_payment(payment, subscription)
        status = payment.invoice.payment_status if payment.invoice else None

    logger.info("Approved payment %s for %s", payment.id, amount)
    return ReconciliationResult(
        payment_id=payment.id,
        new_status=status,
        balance_delta=delta,
        new_balance=money(subscription.balance),
    )


def reject_payment(
    payment_id: int,
    reason: Optional[str] = None,
    reviewer: Optional[User] = None,
) -> ReconciliationResult:
    """Reject a pending payment; its effective amount becomes 0."""
    payment = _load_pending(payment_id, "reject")
    subscription = payment.subscription

    with atomic("Reject payment"):
        if payment.claimed_amount is None:
            payment.claimed_amount = payment.amount
        payment.amount = ZERO
        payment.status = PaymentStatus.REJECTED
        payment.notes = _append_note(payment.notes, f"Rejected: {reason}" if reason else None)
        payment.reviewed_by_id = reviewer.id if reviewer else None
        payment.reviewed_at = utc_now()
        status = refresh_invoice_status(payment.invoice) if payment.invoice else None

    logger.info("Rejected payment %s (%s)", payment.id, reason or "no reason given")
    return ReconciliationResult(
        payment_id=payment.id,
        new_status=status,
        balance_delta=ZERO,
        new_balance=money(subscription.balance),
        applied=False,
    )


def pending_payments(business_unit_id: Optional[int] = None) -> list[Payment]:
    query = Payment.query.filter(Payment.status == PaymentStatus.PENDING)
    if business_unit_id:
        query = query.join(Subscription).filter(
            Subscription.business_unit_id == business_unit_id
        )
    return query.order_by(Payment.created_at.asc()).all()
