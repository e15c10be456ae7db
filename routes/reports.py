"""Dashboard and report routes."""

import datetime

from flask import Blueprint, jsonify, request

from services.audit import audit_trail
from services.auth import role_required
from services.errors import ValidationError
from services.reports import customer_summary, dashboard_summary
from utils import safe_int

reports_bp = Blueprint("reports", __name__)


@reports_bp.route("/api/dashboard", methods=["GET"])
@role_required("view_reports")
def dashboard():
    today = datetime.date.today()
    year = safe_int(request.args.get("year"), today.year)
    month = safe_int(request.args.get("month"), today.month)
    if not 1 <= month <= 12:
        raise ValidationError(f"Invalid month: {month}")
    business_unit_id = safe_int(request.args.get("business_unit_id"), 0) or None
    return jsonify(dashboard_summary(year, month, business_unit_id))


@reports_bp.route("/api/reports/customers/<int:customer_id>", methods=["GET"])
@role_required("view_reports")
def customer_report(customer_id: int):
    return jsonify(customer_summary(customer_id))


@reports_bp.route("/api/audit", methods=["GET"])
@role_required("manage_all")
def audit():
    entity_type = (request.args.get("entity_type") or "").strip()
    entity_id = safe_int(request.args.get("entity_id"), 0) or None
    limit = min(safe_int(request.args.get("limit"), 50), 500)
    return jsonify(audit_trail(entity_type, entity_id, limit))
