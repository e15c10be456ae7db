"""Customer and subscription routes, including plan changes and
activation / disconnection."""

import datetime
import logging
import secrets

from flask import Blueprint, jsonify, request

from extensions import db
from models import (
    VALID_BILLING_ANCHORS,
    BusinessUnit,
    Customer,
    Plan,
    PppSecret,
    Subscription,
)
from services.audit import log_action
from services.auth import role_required
from services.errors import NotFound, ValidationError
from services.lifecycle import process_activation, process_disconnection
from services.notifications import notify
from services.plan_change import preview_subscription_plan_change, process_plan_change
from services.router_sync import create_account
from services.serializers import (
    customer_dict,
    date_field,
    int_field,
    request_data,
    subscription_dict,
)
from sms import new_subscription_message
from utils import safe_int, validate_mobile_number

logger = logging.getLogger(__name__)

customers_bp = Blueprint("customers", __name__)


def _get_or_404(model, obj_id: int):
    obj = db.session.get(model, obj_id)
    if not obj:
        raise NotFound(f"{model.__name__} {obj_id} not found")
    return obj


def _mobile(value, required: bool = True):
    value = (value or "").strip()
    if not value and not required:
        return None
    error = validate_mobile_number(value)
    if error:
        raise ValidationError(error)
    return value


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------

@customers_bp.route("/api/customers", methods=["GET"])
@role_required("manage_customers")
def list_customers():
    query = Customer.query
    search = (request.args.get("q") or "").strip()
    if search:
        query = query.filter(Customer.name.ilike(f"%{search}%"))
    customers = query.order_by(Customer.name).all()
    return jsonify([customer_dict(c) for c in customers])


@customers_bp.route("/api/customers", methods=["POST"])
@role_required("manage_customers")
def create_customer():
    data = request_data()
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Name is required")
    referrer_id = int_field(data, "referrer_id")
    if referrer_id:
        _get_or_404(Customer, referrer_id)
    customer = Customer(
        name=name,
        mobile_number=_mobile(data.get("mobile_number")),
        email=(data.get("email") or "").strip() or None,
        referrer_id=referrer_id,
    )
    db.session.add(customer)
    db.session.flush()
    log_action("create", "customer", customer.id, f"created customer {name}")
    db.session.commit()
    return jsonify({"success": True, "customer": customer_dict(customer)}), 201


@customers_bp.route("/api/customers/<int:customer_id>", methods=["GET"])
@role_required("manage_customers")
def get_customer(customer_id: int):
    customer = _get_or_404(Customer, customer_id)
    data = customer_dict(customer)
    data["subscriptions"] = [subscription_dict(s) for s in customer.subscriptions]
    return jsonify(data)


@customers_bp.route("/api/customers/<int:customer_id>", methods=["PUT"])
@role_required("manage_customers")
def update_customer(customer_id: int):
    customer = _get_or_404(Customer, customer_id)
    data = request_data()
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Name is required")
        customer.name = name
    if "mobile_number" in data:
        customer.mobile_number = _mobile(data.get("mobile_number"))
    if "email" in data:
        customer.email = (data.get("email") or "").strip() or None
    if "referrer_id" in data:
        referrer_id = int_field(data, "referrer_id")
        if referrer_id == customer.id:
            raise ValidationError("A customer cannot refer themselves")
        if referrer_id:
            _get_or_404(Customer, referrer_id)
        customer.referrer_id = referrer_id
    log_action("update", "customer", customer.id, f"updated customer {customer.name}")
    db.session.commit()
    return jsonify({"success": True, "customer": customer_dict(customer)})


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

@customers_bp.route("/api/subscriptions", methods=["GET"])
@role_required("manage_customers")
def list_subscriptions():
    query = Subscription.query
    business_unit_id = safe_int(request.args.get("business_unit_id"), 0)
    if business_unit_id:
        query = query.filter_by(business_unit_id=business_unit_id)
    if request.args.get("active") in ("true", "false"):
        query = query.filter_by(active=request.args.get("active") == "true")
    subscriptions = query.order_by(Subscription.id).all()
    return jsonify([subscription_dict(s) for s in subscriptions])


@customers_bp.route("/api/subscriptions", methods=["POST"])
@role_required("manage_subscriptions")
def create_subscription():
    """Create a subscription; optionally provision its router PPP account."""
    data = request_data()
    customer = _get_or_404(Customer, int_field(data, "customer_id", required=True))
    plan = _get_or_404(Plan, int_field(data, "plan_id", required=True))
    unit = _get_or_404(BusinessUnit, int_field(data, "business_unit_id", required=True))
    if not plan.is_active:
        raise ValidationError(f"Plan {plan.name} is not available")
    anchor = (data.get("billing_anchor") or unit.billing_anchor).strip()
    if anchor not in VALID_BILLING_ANCHORS:
        raise ValidationError(f"Billing anchor must be one of {', '.join(VALID_BILLING_ANCHORS)}")

    subscription = Subscription(
        customer=customer,
        plan=plan,
        business_unit=unit,
        billing_anchor=anchor,
        active=bool(data.get("active", True)),
        date_installed=date_field(data, "date_installed") or datetime.date.today(),
        address=(data.get("address") or "").strip() or None,
        landmark=(data.get("landmark") or "").strip() or None,
        contact_person=(data.get("contact_person") or "").strip() or None,
        mobile_number=_mobile(data.get("mobile_number"), required=False),
        balance=0,
    )
    db.session.add(subscription)
    db.session.flush()

    router_name = (data.get("router_username") or "").strip()
    if router_name:
        db.session.add(PppSecret(subscription=subscription, name=router_name))
    log_action("create", "subscription", subscription.id, f"{customer.name} on {plan.name}")
    db.session.commit()

    result = {"success": True, "subscription": subscription_dict(subscription)}
    if router_name:
        password = data.get("router_password") or secrets.token_urlsafe(8)
        router_result = create_account(subscription, router_name, password)
        if not router_result.success:
            result["warning"] = f"Subscription created but router account failed: {router_result.error}"
    notify(
        subscription.mobile_number or customer.mobile_number,
        new_subscription_message(customer.name, plan.name),
    )
    return jsonify(result), 201


@customers_bp.route("/api/subscriptions/<int:subscription_id>", methods=["GET"])
@role_required("manage_customers")
def get_subscription(subscription_id: int):
    return jsonify(subscription_dict(_get_or_404(Subscription, subscription_id)))


@customers_bp.route("/api/subscriptions/<int:subscription_id>", methods=["PUT"])
@role_required("manage_subscriptions")
def update_subscription(subscription_id: int):
    """Edit contact and installation details.  Plan and status have their own endpoints."""
    subscription = _get_or_404(Subscription, subscription_id)
    data = request_data()
    for key in ("address", "landmark", "contact_person"):
        if key in data:
            setattr(subscription, key, (data.get(key) or "").strip() or None)
    if "mobile_number" in data:
        subscription.mobile_number = _mobile(data.get("mobile_number"), required=False)
    if "date_installed" in data:
        subscription.date_installed = date_field(data, "date_installed")
    if "router_username" in data:
        name = (data.get("router_username") or "").strip()
        if subscription.ppp_secret:
            subscription.ppp_secret.name = name
        elif name:
            db.session.add(PppSecret(subscription=subscription, name=name))
    log_action("update", "subscription", subscription.id, "updated details")
    db.session.commit()
    return jsonify({"success": True, "subscription": subscription_dict(subscription)})


@customers_bp.route("/api/subscriptions/<int:subscription_id>/plan-change/preview", methods=["GET", "POST"])
@role_required("manage_subscriptions")
def plan_change_preview(subscription_id: int):
    data = request_data() if request.method == "POST" else request.args.to_dict()
    preview = preview_subscription_plan_change(
        subscription_id,
        int_field(data, "new_plan_id", required=True),
        date_field(data, "change_date"),
    )
    return jsonify({"success": True, "preview": preview.to_dict()})


@customers_bp.route("/api/subscriptions/<int:subscription_id>/plan-change", methods=["POST"])
@role_required("manage_subscriptions")
def plan_change(subscription_id: int):
    data = request_data()
    result = process_plan_change(
        subscription_id,
        int_field(data, "new_plan_id", required=True),
        date_field(data, "change_date"),
    )
    if result.success:
        log_action(
            "plan_change", "subscription", subscription_id,
            f"plan change {result.plan_change_id}",
        )
        db.session.commit()
        return jsonify(result.to_dict())
    status = {"not_found": 404, "validation_error": 400}.get(result.error_type, 500)
    return jsonify(result.to_dict()), status


@customers_bp.route("/api/subscriptions/<int:subscription_id>/activate", methods=["POST"])
@role_required("manage_subscriptions")
def activate(subscription_id: int):
    data = request_data()
    result = process_activation(
        subscription_id,
        date_field(data, "activation_date"),
        generate_invoice=bool(data.get("generate_invoice", True)),
    )
    return jsonify(result.to_dict())


@customers_bp.route("/api/subscriptions/<int:subscription_id>/disconnect", methods=["POST"])
@role_required("manage_subscriptions")
def disconnect(subscription_id: int):
    data = request_data()
    result = process_disconnection(
        subscription_id,
        date_field(data, "disconnection_date"),
        generate_invoice=bool(data.get("generate_invoice", True)),
    )
    return jsonify(result.to_dict())
