"""Business unit and plan management routes."""

import logging

from flask import Blueprint, jsonify

from extensions import db
from models import VALID_BILLING_ANCHORS, BusinessUnit, Plan
from services.audit import log_action
from services.auth import login_required, role_required
from services.errors import NotFound, ValidationError
from services.serializers import business_unit_dict, plan_dict, request_data
from utils import ZERO, money, safe_decimal

logger = logging.getLogger(__name__)

catalog_bp = Blueprint("catalog", __name__)


def _anchor(value) -> str:
    anchor = (value or "15th").strip()
    if anchor not in VALID_BILLING_ANCHORS:
        raise ValidationError(f"Billing anchor must be one of {', '.join(VALID_BILLING_ANCHORS)}")
    return anchor


def _fee(value):
    fee = safe_decimal(value)
    if fee is None or fee < ZERO:
        raise ValidationError("Monthly fee must be a non-negative amount")
    return money(fee)


# ---------------------------------------------------------------------------
# Business units
# ---------------------------------------------------------------------------

@catalog_bp.route("/api/business-units", methods=["GET"])
@login_required
def list_business_units():
    units = BusinessUnit.query.order_by(BusinessUnit.name).all()
    return jsonify([business_unit_dict(u) for u in units])


@catalog_bp.route("/api/business-units", methods=["POST"])
@role_required("manage_all")
def create_business_unit():
    data = request_data()
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Name is required")
    if BusinessUnit.query.filter_by(name=name).first():
        raise ValidationError(f"Business unit {name} already exists")
    unit = BusinessUnit(name=name, billing_anchor=_anchor(data.get("billing_anchor")))
    db.session.add(unit)
    db.session.flush()
    log_action("create", "business_unit", unit.id, f"created {name}")
    db.session.commit()
    return jsonify({"success": True, "business_unit": business_unit_dict(unit)}), 201


@catalog_bp.route("/api/business-units/<int:unit_id>", methods=["PUT"])
@role_required("manage_all")
def update_business_unit(unit_id: int):
    unit = db.session.get(BusinessUnit, unit_id)
    if not unit:
        raise NotFound(f"Business unit {unit_id} not found")
    data = request_data()
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Name is required")
        unit.name = name
    if "billing_anchor" in data:
        unit.billing_anchor = _anchor(data.get("billing_anchor"))
    if "is_active" in data:
        unit.is_active = bool(data.get("is_active"))
    log_action("update", "business_unit", unit.id, f"updated {unit.name}")
    db.session.commit()
    return jsonify({"success": True, "business_unit": business_unit_dict(unit)})


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

@catalog_bp.route("/api/plans", methods=["GET"])
@login_required
def list_plans():
    plans = Plan.query.order_by(Plan.monthly_fee).all()
    return jsonify([plan_dict(p) for p in plans])


@catalog_bp.route("/api/plans", methods=["POST"])
@role_required("manage_all")
def create_plan():
    data = request_data()
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Name is required")
    if Plan.query.filter_by(name=name).first():
        raise ValidationError(f"Plan {name} already exists")
    plan = Plan(name=name, monthly_fee=_fee(data.get("monthly_fee")))
    db.session.add(plan)
    db.session.flush()
    log_action("create", "plan", plan.id, f"created {name} at {plan.monthly_fee}")
    db.session.commit()
    return jsonify({"success": True, "plan": plan_dict(plan)}), 201


@catalog_bp.route("/api/plans/<int:plan_id>", methods=["PUT"])
@role_required("manage_all")
def update_plan(plan_id: int):
    plan = db.session.get(Plan, plan_id)
    if not plan:
        raise NotFound(f"Plan {plan_id} not found")
    data = request_data()
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Name is required")
        plan.name = name
    if "monthly_fee" in data:
        plan.monthly_fee = _fee(data.get("monthly_fee"))
    if "is_active" in data:
        plan.is_active = bool(data.get("is_active"))
    log_action("update", "plan", plan.id, f"updated {plan.name}")
    db.session.commit()
    return jsonify({"success": True, "plan": plan_dict(plan)})
