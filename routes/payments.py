"""Payment recording, verification and PayMongo checkout routes."""

import logging

from flask import Blueprint, current_app, jsonify, request

from extensions import csrf, db
from models import Invoice, Payment, Subscription
from paymongo_client import PaymongoClient, PaymongoError
from services.audit import log_action
from services.auth import can_access_subscription, get_current_user, login_required, role_required
from services.errors import ExternalServiceError, NotFound, ValidationError
from services.ledger import recalculate_balance
from services.notifications import notify
from services.reconciliation import apply_payment, record_payment
from services.reports import payment_history
from services.serializers import date_field, int_field, payment_dict, request_data
from services.verification import approve_payment, pending_payments, reject_payment
from sms import payment_received_message
from utils import safe_int

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__)


def _notify_received(subscription_id: int, amount) -> None:
    subscription = db.session.get(Subscription, subscription_id)
    customer = subscription.customer
    notify(
        subscription.mobile_number or customer.mobile_number,
        payment_received_message(customer.name, amount, subscription.balance),
    )


@payments_bp.route("/api/payments", methods=["POST"])
@role_required("manage_payments")
def create_payment():
    """Record a collected payment against a subscription."""
    data = request_data()
    subscription_id = int_field(data, "subscription_id", required=True)
    result = record_payment(
        subscription_id,
        data.get("amount"),
        mode=data.get("mode") or "Cash",
        invoice_id=int_field(data, "invoice_id"),
        settlement_date=date_field(data, "settlement_date"),
        notes=data.get("notes"),
        reference=(data.get("reference") or "").strip() or None,
    )
    if result.applied:
        log_action("create", "payment", result.payment_id, f"recorded {data.get('amount')}")
        db.session.commit()
        _notify_received(subscription_id, data.get("amount"))
    return jsonify({"success": True, **result.to_dict()}), 201 if result.applied else 200


@payments_bp.route("/api/invoices/<int:invoice_id>/payments", methods=["POST"])
@role_required("manage_payments")
def pay_invoice(invoice_id: int):
    data = request_data()
    result = apply_payment(
        invoice_id,
        data.get("amount"),
        mode=data.get("mode") or "Cash",
        settlement_date=date_field(data, "settlement_date"),
        notes=data.get("notes"),
        reference=(data.get("reference") or "").strip() or None,
    )
    if result.applied:
        log_action("create", "payment", result.payment_id, f"applied to invoice {invoice_id}")
        db.session.commit()
    return jsonify({"success": True, **result.to_dict()}), 201 if result.applied else 200


@payments_bp.route("/api/payments/pending", methods=["GET"])
@role_required("verify_payments")
def list_pending():
    business_unit_id = safe_int(request.args.get("business_unit_id"), 0) or None
    return jsonify([payment_dict(p) for p in pending_payments(business_unit_id)])


@payments_bp.route("/api/payments/<int:payment_id>/approve", methods=["POST"])
@role_required("verify_payments")
def approve(payment_id: int):
    data = request_data()
    result = approve_payment(
        payment_id,
        approved_amount=data.get("approved_amount"),
        admin_notes=data.get("admin_notes"),
        reviewer=get_current_user(),
    )
    log_action("approve", "payment", payment_id, f"approved {data.get('approved_amount') or ''}".strip())
    db.session.commit()
    payment = db.session.get(Payment, payment_id)
    _notify_received(payment.subscription_id, payment.amount)
    return jsonify({"success": True, **result.to_dict()})


@payments_bp.route("/api/payments/<int:payment_id>/reject", methods=["POST"])
@role_required("verify_payments")
def reject(payment_id: int):
    data = request_data()
    result = reject_payment(payment_id, reason=data.get("reason"), reviewer=get_current_user())
    log_action("reject", "payment", payment_id, data.get("reason") or "")
    db.session.commit()
    return jsonify({"success": True, **result.to_dict()})


@payments_bp.route("/api/subscriptions/<int:subscription_id>/payments", methods=["GET"])
@login_required
def subscription_payments(subscription_id: int):
    subscription = db.session.get(Subscription, subscription_id)
    if not subscription or not can_access_subscription(get_current_user(), subscription):
        raise NotFound(f"Subscription {subscription_id} not found")
    return jsonify(payment_history(subscription_id))


@payments_bp.route("/api/subscriptions/<int:subscription_id>/recalculate-balance", methods=["POST"])
@role_required("manage_payments")
def recalculate(subscription_id: int):
    balance = recalculate_balance(subscription_id)
    return jsonify({"success": True, "balance": str(balance)})


# ---------------------------------------------------------------------------
# PayMongo
# ---------------------------------------------------------------------------

def _paymongo() -> PaymongoClient:
    config = current_app.config["PAYMONGO_CONFIG"]
    if not config.enabled:
        raise ValidationError("Online payments are not enabled")
    return PaymongoClient(config)


@payments_bp.route("/api/paymongo/create-source", methods=["POST"])
@csrf.exempt
@login_required
def paymongo_create_source():
    data = request_data()
    invoice = db.session.get(Invoice, int_field(data, "invoice_id", required=True))
    if not invoice or not can_access_subscription(get_current_user(), invoice.subscription):
        raise NotFound("Invoice not found")
    try:
        source = _paymongo().create_source(
            data.get("amount") or invoice.amount_due,
            data.get("type") or "gcash",
            data.get("success_url") or request.host_url + "payment/success",
            data.get("failed_url") or request.host_url + "payment/failed",
        )
    except PaymongoError as e:
        raise ExternalServiceError(str(e)) from e
    return jsonify({"success": True, "source": source})


@payments_bp.route("/api/paymongo/create-payment", methods=["POST"])
@csrf.exempt
@login_required
def paymongo_create_payment():
    """Charge an authorised source and apply the confirmed amount to the invoice."""
    data = request_data()
    invoice = db.session.get(Invoice, int_field(data, "invoice_id", required=True))
    if not invoice or not can_access_subscription(get_current_user(), invoice.subscription):
        raise NotFound("Invoice not found")
    source_id = (data.get("source_id") or "").strip()
    if not source_id:
        raise ValidationError("source_id is required")
    description = f"Invoice {invoice.invoice_number or invoice.id}"
    try:
        charge = _paymongo().create_payment(source_id, data.get("amount") or invoice.amount_due, description)
    except PaymongoError as e:
        raise ExternalServiceError(str(e)) from e
    if charge["status"] != "paid":
        return jsonify({"success": False, "error": f"Payment status is {charge['status']}"}), 402

    result = apply_payment(
        invoice.id, charge["amount"], mode="Online",
        notes=f"PayMongo {source_id}", reference=charge["id"],
    )
    return jsonify({"success": True, "payment": charge["id"], **result.to_dict()})
