"""Invoice listing, generation and printable documents."""

import datetime
import logging

from flask import Blueprint, Response, current_app, jsonify, request

from extensions import db
from models import Invoice, InvoiceStatus, Subscription
from services.audit import log_action
from services.auth import can_access_subscription, get_current_user, login_required, role_required
from services.errors import NotFound, ValidationError
from services.invoice import generate_invoices_for_business_unit
from services.invoice_document import render_invoice_html
from services.serializers import int_field, invoice_dict, payment_dict, request_data
from utils import safe_int

logger = logging.getLogger(__name__)

invoices_bp = Blueprint("invoices", __name__)


def _invoice_or_404(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice or not can_access_subscription(get_current_user(), invoice.subscription):
        raise NotFound(f"Invoice {invoice_id} not found")
    return invoice


@invoices_bp.route("/api/invoices", methods=["GET"])
@role_required("manage_invoices")
def list_invoices():
    query = Invoice.query.join(Subscription)
    status = request.args.get("status")
    if status:
        try:
            query = query.filter(Invoice.payment_status == InvoiceStatus(status))
        except ValueError:
            raise ValidationError(f"Invalid invoice status: {status}") from None
    subscription_id = safe_int(request.args.get("subscription_id"), 0)
    if subscription_id:
        query = query.filter(Invoice.subscription_id == subscription_id)
    business_unit_id = safe_int(request.args.get("business_unit_id"), 0)
    if business_unit_id:
        query = query.filter(Subscription.business_unit_id == business_unit_id)
    invoices = query.order_by(Invoice.due_date.desc(), Invoice.id.desc()).all()
    return jsonify([invoice_dict(i) for i in invoices])


@invoices_bp.route("/api/invoices/<int:invoice_id>", methods=["GET"])
@login_required
def get_invoice(invoice_id: int):
    invoice = _invoice_or_404(invoice_id)
    data = invoice_dict(invoice)
    data["payments"] = [payment_dict(p) for p in invoice.payments]
    return jsonify(data)


@invoices_bp.route("/api/invoices/<int:invoice_id>/document", methods=["GET"])
@login_required
def invoice_document(invoice_id: int):
    invoice = _invoice_or_404(invoice_id)
    html = render_invoice_html(invoice, current_app.config["APP_CONFIG"])
    return Response(html, mimetype="text/html")


@invoices_bp.route("/api/invoices/generate", methods=["POST"])
@role_required("manage_invoices")
def generate_invoices():
    data = request_data()
    today = datetime.date.today()
    business_unit_id = int_field(data, "business_unit_id", required=True)
    year = int_field(data, "year") or today.year
    month = int_field(data, "month") or today.month
    result = generate_invoices_for_business_unit(
        business_unit_id, year, month, send_sms=bool(data.get("send_sms", True))
    )
    log_action(
        "generate", "invoice", None,
        f"business unit {business_unit_id} {year}-{month:02d}: {result.generated} generated",
    )
    db.session.commit()
    return jsonify(result.to_dict())
