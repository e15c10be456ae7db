"""Subscription activation and disconnection."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Optional

from extensions import db
from models import Invoice, Subscription
from services.audit import log_action
from services.errors import NotFound, ValidationError
from services.invoice import create_activation_invoice, create_disconnection_invoice, notify_invoice
from services.router_sync import disable_account, enable_account
from services.transaction import atomic

logger = logging.getLogger(__name__)


@dataclass
class LifecycleResult:
    success: bool
    active: bool
    invoice: Optional[Invoice] = None
    warning: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"success": self.success, "active": self.active}
        if self.invoice is not None:
            data["invoice"] = {
                "id": self.invoice.id,
                "invoice_number": self.invoice.invoice_number,
                "amount_due": str(self.invoice.amount_due),
                "due_date": self.invoice.due_date.isoformat(),
            }
        if self.warning:
            data["warning"] = self.warning
        return data


def _get(subscription_id: int) -> Subscription:
    subscription = db.session.get(Subscription, subscription_id)
    if not subscription:
        raise NotFound(f"Subscription {subscription_id} not found")
    return subscription


def _finish(subscription: Subscription, router_result, action: str) -> Optional[str]:
    if router_result.success:
        if not router_result.skipped:
            db.session.commit()
        return None
    db.session.rollback()
    return f"Subscription {action} but router update failed: {router_result.error}"


def process_activation(
    subscription_id: int,
    activation_date: Optional[datetime.date] = None,
    generate_invoice: bool = True,
    router=None,
) -> LifecycleResult:
    """Activate (or reconnect) a subscription, optionally billing the partial period.

    The invoice and the state change commit together; the customer is texted
    only after the commit.
    """
    subscription = _get(subscription_id)
    if subscription.active:
        raise ValidationError("Subscription is already active")
    activation_date = activation_date or datetime.date.today()

    invoice = None
    with atomic("Activate subscription"):
        if generate_invoice:
            invoice = create_activation_invoice(subscription, activation_date)
        subscription.active = True
        log_action("activate", "subscription", subscription.id, f"activated on {activation_date.isoformat()}")
    logger.info("Activated subscription %s", subscription.id)
    if invoice is not None:
        notify_invoice(subscription, invoice)

    warning = _finish(subscription, enable_account(subscription, router=router), "activated")
    return LifecycleResult(success=True, active=True, invoice=invoice, warning=warning)


def process_disconnection(
    subscription_id: int,
    disconnection_date: Optional[datetime.date] = None,
    generate_invoice: bool = True,
    router=None,
) -> LifecycleResult:
    """Disconnect a subscription, optionally billing service up to the disconnection date."""
    subscription = _get(subscription_id)
    if not subscription.active:
        raise ValidationError("Subscription is already disconnected")
    disconnection_date = disconnection_date or datetime.date.today()

    invoice = None
    with atomic("Disconnect subscription"):
        if generate_invoice:
            invoice = create_disconnection_invoice(subscription, disconnection_date)
        subscription.active = False
        log_action(
            "disconnect", "subscription", subscription.id,
            f"disconnected on {disconnection_date.isoformat()}",
        )
    logger.info("Disconnected subscription %s", subscription.id)
    if invoice is not None:
        notify_invoice(subscription, invoice)

    warning = _finish(subscription, disable_account(subscription, router=router), "disconnected")
    return LifecycleResult(success=True, active=False, invoice=invoice, warning=warning)
