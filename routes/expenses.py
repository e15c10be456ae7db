"""Expense tracking routes."""

import datetime

from flask import Blueprint, jsonify, request

from extensions import db
from models import VALID_EXPENSE_REASONS, BusinessUnit, Expense, Subscription
from services.audit import log_action
from services.auth import get_current_user, role_required
from services.errors import NotFound, ValidationError
from services.serializers import date_field, expense_dict, int_field, request_data
from utils import ZERO, money, parse_date, safe_decimal, safe_int

expenses_bp = Blueprint("expenses", __name__)


@expenses_bp.route("/api/expenses", methods=["GET"])
@role_required("manage_expenses")
def list_expenses():
    query = Expense.query
    business_unit_id = safe_int(request.args.get("business_unit_id"), 0)
    if business_unit_id:
        query = query.filter_by(business_unit_id=business_unit_id)
    date_from = parse_date(request.args.get("from"))
    date_to = parse_date(request.args.get("to"))
    if date_from:
        query = query.filter(Expense.expense_date >= date_from)
    if date_to:
        query = query.filter(Expense.expense_date <= date_to)
    expenses = query.order_by(Expense.expense_date.desc(), Expense.id.desc()).all()
    return jsonify([expense_dict(e) for e in expenses])


@expenses_bp.route("/api/expenses", methods=["POST"])
@role_required("manage_expenses")
def create_expense():
    data = request_data()
    amount = safe_decimal(data.get("amount"))
    if amount is None or amount <= ZERO:
        raise ValidationError("Amount must be greater than zero")
    quantity = int_field(data, "quantity") or 1
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    reason = data.get("reason") or "Others"
    if reason not in VALID_EXPENSE_REASONS:
        raise ValidationError(f"Reason must be one of {', '.join(sorted(VALID_EXPENSE_REASONS))}")

    subscription_id = int_field(data, "subscription_id")
    business_unit_id = int_field(data, "business_unit_id")
    if subscription_id:
        subscription = db.session.get(Subscription, subscription_id)
        if not subscription:
            raise NotFound(f"Subscription {subscription_id} not found")
        business_unit_id = business_unit_id or subscription.business_unit_id
    if business_unit_id and not db.session.get(BusinessUnit, business_unit_id):
        raise NotFound(f"Business unit {business_unit_id} not found")
    user = get_current_user()
    if not business_unit_id and user.business_unit_id:
        business_unit_id = user.business_unit_id

    expense = Expense(
        business_unit_id=business_unit_id,
        subscription_id=subscription_id,
        quantity=quantity,
        amount=money(amount),
        reason=reason,
        notes=data.get("notes"),
        expense_date=date_field(data, "expense_date") or datetime.date.today(),
        created_by_id=user.id,
    )
    db.session.add(expense)
    db.session.flush()
    log_action("create", "expense", expense.id, f"{reason} {expense.amount} x{quantity}")
    db.session.commit()
    return jsonify({"success": True, "expense": expense_dict(expense)}), 201


@expenses_bp.route("/api/expenses/<int:expense_id>", methods=["DELETE"])
@role_required("manage_expenses")
def delete_expense(expense_id: int):
    expense = db.session.get(Expense, expense_id)
    if not expense:
        raise NotFound(f"Expense {expense_id} not found")
    log_action("delete", "expense", expense.id, f"{expense.reason} {expense.amount}")
    db.session.delete(expense)
    db.session.commit()
    return jsonify({"success": True})
