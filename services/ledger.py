"""Subscription balance ledger.

``post_entry`` is the only code path that changes ``Subscription.balance``;
the balance always equals the sum of the subscription's ledger entries.
Positive amounts increase what the customer owes, negative amounts are
payments and credits.  Nothing here commits.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import func

from extensions import db
from models import VALID_LEDGER_KINDS, LedgerEntry, Subscription
from services.errors import NotFound, ValidationError
from utils import ZERO, money

logger = logging.getLogger(__name__)


def post_entry(
    subscription: Subscription,
    kind: str,
    amount,
    *,
    invoice_id: Optional[int] = None,
    payment_id: Optional[int] = None,
    description: str = "",
) -> LedgerEntry:
    """Add a signed ledger entry and move the subscription balance by *amount*."""
    if kind not in VALID_LEDGER_KINDS:
        raise ValidationError(f"Unknown ledger entry kind: {kind}")
    amount = money(amount)
    entry = LedgerEntry(
        subscription_id=subscription.id,
        kind=kind,
        amount=amount,
        invoice_id=invoice_id,
        payment_id=payment_id,
        description=description[:255],
    )
    db.session.add(entry)
    subscription.balance = money(Decimal(str(subscription.balance or 0)) + amount)
    db.session.flush()
    logger.info(
        "Ledger %s %s on subscription %s (balance %s)",
        kind, amount, subscription.id, subscription.balance,
    )
    return entry


def ledger_balance(subscription_id: int) -> Decimal:
    total = (
        db.session.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
        .filter(LedgerEntry.subscription_id == subscription_id)
        .scalar()
    )
    return money(total or ZERO)


def recalculate_balance(subscription_id: int) -> Decimal:
    """Reset the stored balance to the ledger sum and commit.

    Returns the recalculated balance.
    """
    subscription = db.session.get(Subscription, subscription_id)
    if not subscription:
        raise NotFound(f"Subscription {subscription_id} not found")
    balance = ledger_balance(subscription_id)
    if money(subscription.balance or 0) != balance:
        logger.warning(
            "Subscription %s balance drifted: stored %s, ledger %s",
            subscription_id, subscription.balance, balance,
        )
    subscription.balance = balance
    db.session.commit()
    return balance
