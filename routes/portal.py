"""Customer self-service portal."""

from flask import Blueprint, jsonify

from extensions import db
from models import Invoice, Subscription
from services.auth import can_access_subscription, get_current_user, role_required
from services.errors import NotFound
from services.serializers import (
    customer_dict,
    invoice_dict,
    payment_dict,
    request_data,
    subscription_dict,
)
from services.verification import submit_manual_payment

portal_bp = Blueprint("portal", __name__, url_prefix="/portal")


def _own_subscription(subscription_id: int) -> Subscription:
    subscription = db.session.get(Subscription, subscription_id)
    if not subscription or not can_access_subscription(get_current_user(), subscription):
        raise NotFound(f"Subscription {subscription_id} not found")
    return subscription


@portal_bp.route("/", methods=["GET"])
@role_required("view_own")
def overview():
    customer = get_current_user().customer
    if customer is None:
        raise NotFound("No customer record linked to this account")
    data = customer_dict(customer)
    data["subscriptions"] = [subscription_dict(s) for s in customer.subscriptions]
    return jsonify(data)


@portal_bp.route("/subscriptions/<int:subscription_id>", methods=["GET"])
@role_required("view_own")
def subscription_detail(subscription_id: int):
    subscription = _own_subscription(subscription_id)
    invoices = (
        Invoice.query.filter_by(subscription_id=subscription.id)
        .order_by(Invoice.due_date.desc())
        .all()
    )
    data = subscription_dict(subscription)
    data["invoices"] = [invoice_dict(i) for i in invoices]
    return jsonify(data)


@portal_bp.route("/subscriptions/<int:subscription_id>/payments", methods=["POST"])
@role_required("view_own")
def submit_payment(subscription_id: int):
    """Submit an e-wallet payment for admin verification."""
    subscription = _own_subscription(subscription_id)
    data = request_data()
    payment = submit_manual_payment(
        subscription.id,
        data.get("amount"),
        data.get("wallet_provider"),
        data.get("reference_number"),
        proof_url=data.get("proof_url"),
        notes=data.get("notes"),
    )
    return jsonify({"success": True, "payment": payment_dict(payment)}), 201


@portal_bp.route("/subscriptions/<int:subscription_id>/invoices/<int:invoice_id>", methods=["GET"])
@role_required("view_own")
def invoice_detail(subscription_id: int, invoice_id: int):
    subscription = _own_subscription(subscription_id)
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice or invoice.subscription_id != subscription.id:
        raise NotFound(f"Invoice {invoice_id} not found")
    data = invoice_dict(invoice)
    data["payments"] = [payment_dict(p) for p in invoice.payments]
    return jsonify(data)

