"""JSON representations of models returned by the API."""

from __future__ import annotations

import datetime
from typing import Optional

from flask import request

from services.errors import ValidationError
from utils import money, parse_date


def request_data() -> dict:
    """Request body as a dict, accepting JSON or form data."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def date_field(data: dict, key: str, required: bool = False) -> Optional[datetime.date]:
    """Read an ISO date from *data*; a present but malformed value is an error."""
    raw = data.get(key)
    if raw in (None, ""):
        if required:
            raise ValidationError(f"{key} is required")
        return None
    value = parse_date(str(raw))
    if value is None:
        raise ValidationError(f"{key} must be a date in YYYY-MM-DD format")
    return value


def int_field(data: dict, key: str, required: bool = False) -> Optional[int]:
    raw = data.get(key)
    if raw in (None, ""):
        if required:
            raise ValidationError(f"{key} is required")
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer") from None


def _iso(value):
    return value.isoformat() if value else None


def business_unit_dict(unit) -> dict:
    return {
        "id": unit.id,
        "name": unit.name,
        "billing_anchor": unit.billing_anchor,
        "is_active": unit.is_active,
    }


def plan_dict(plan) -> dict:
    return {
        "id": plan.id,
        "name": plan.name,
        "monthly_fee": str(money(plan.monthly_fee)),
        "is_active": plan.is_active,
    }


def customer_dict(customer) -> dict:
    return {
        "id": customer.id,
        "name": customer.name,
        "mobile_number": customer.mobile_number,
        "email": customer.email,
        "referrer_id": customer.referrer_id,
        "active": customer.is_active,
        "created_at": _iso(customer.created_at),
    }


def subscription_dict(sub) -> dict:
    return {
        "id": sub.id,
        "customer_id": sub.customer_id,
        "customer_name": sub.customer.name if sub.customer else None,
        "plan_id": sub.plan_id,
        "plan_name": sub.plan.name if sub.plan else None,
        "business_unit_id": sub.business_unit_id,
        "billing_anchor": sub.billing_anchor,
        "active": sub.active,
        "balance": str(money(sub.balance)),
        "date_installed": _iso(sub.date_installed),
        "address": sub.address,
        "mobile_number": sub.mobile_number,
        "router_account": sub.ppp_secret.name if sub.ppp_secret else None,
    }


def invoice_dict(invoice) -> dict:
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "subscription_id": invoice.subscription_id,
        "kind": invoice.kind,
        "period_start": _iso(invoice.period_start),
        "period_end": _iso(invoice.period_end),
        "due_date": _iso(invoice.due_date),
        "amount_due": str(money(invoice.amount_due)),
        "payment_status": invoice.payment_status.value,
        "notes": invoice.notes,
    }


def payment_dict(payment) -> dict:
    return {
        "id": payment.id,
        "subscription_id": payment.subscription_id,
        "invoice_id": payment.invoice_id,
        "amount": str(money(payment.amount)),
        "claimed_amount": (
            str(money(payment.claimed_amount)) if payment.claimed_amount is not None else None
        ),
        "mode": payment.mode,
        "status": payment.status.value,
        "settlement_date": _iso(payment.settlement_date),
        "reference": payment.reference,
        "wallet_provider": payment.wallet_provider,
        "proof_url": payment.proof_url,
        "notes": payment.notes,
    }


def expense_dict(expense) -> dict:
    return {
        "id": expense.id,
        "business_unit_id": expense.business_unit_id,
        "subscription_id": expense.subscription_id,
        "quantity": expense.quantity,
        "amount": str(money(expense.amount)),
        "reason": expense.reason,
        "notes": expense.notes,
        "expense_date": _iso(expense.expense_date),
    }
