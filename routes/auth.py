"""Authentication and user management routes."""

import re

from flask import Blueprint, jsonify, session
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db, limiter
from models import VALID_ROLES, BusinessUnit, Customer, User
from services.audit import log_action
from services.auth import get_current_user, login_required, role_required
from services.errors import NotFound, ValidationError
from services.serializers import int_field, request_data


def _validate_password(password: str) -> str | None:
    """Return error message if password is weak, else None."""
    if len(password) < 8:
        return "Password must be at least 8 characters long."
    if not re.search(r"[A-Z]", password):
        return "Password must contain an uppercase letter."
    if not re.search(r"[a-z]", password):
        return "Password must contain a lowercase letter."
    if not re.search(r"\d", password):
        return "Password must contain a digit."
    return None


def _user_dict(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "full_name": user.full_name,
        "role": user.role,
        "business_unit_id": user.business_unit_id,
        "customer_id": user.customer_id,
        "must_change_password": bool(user.must_change_password),
        "is_active": user.is_active,
    }


auth_bp = Blueprint("auth", __name__)


@auth_bp.route("/login", methods=["POST"])
@limiter.limit("5 per minute")
def login():
    data = request_data()
    username = (data.get("username") or "").strip()
    password = data.get("password") or ""
    user = User.query.filter_by(username=username).first()
    if user and user.is_active and check_password_hash(user.password_hash, password):
        session.clear()
        session["user_id"] = user.id
        session.permanent = True
        return jsonify({"success": True, "user": _user_dict(user)})
    return jsonify({"success": False, "error": "Invalid username or password"}), 401


@auth_bp.route("/logout", methods=["POST"])
def logout():
    user = get_current_user()
    if user:
        log_action("logout", "user", user.id, "user logged out")
        db.session.commit()
    session.clear()
    return jsonify({"success": True})


@auth_bp.route("/csrf-token", methods=["GET"])
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify(_user_dict(get_current_user()))


@auth_bp.route("/change-password", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def change_password():
    user = get_current_user()
    data = request_data()
    current_pw = data.get("current_password") or ""
    new_pw = data.get("new_password") or ""
    if not check_password_hash(user.password_hash, current_pw):
        raise ValidationError("Current password is incorrect")
    pw_error = _validate_password(new_pw)
    if pw_error:
        raise ValidationError(pw_error)
    if new_pw != data.get("confirm_password"):
        raise ValidationError("Passwords do not match")
    user.password_hash = generate_password_hash(new_pw)
    user.must_change_password = False
    log_action("change_password", "user", user.id, "password changed")
    db.session.commit()
    return jsonify({"success": True})


@auth_bp.route("/api/users", methods=["GET"])
@role_required("manage_all")
def list_users():
    users = User.query.order_by(User.username).all()
    return jsonify([_user_dict(u) for u in users])


@auth_bp.route("/api/users", methods=["POST"])
@role_required("manage_all")
def create_user():
    data = request_data()
    username = (data.get("username") or "").strip()
    password = data.get("password") or ""
    role = data.get("role") or "collector"
    if not username:
        raise ValidationError("Username is required")
    if role not in VALID_ROLES:
        raise ValidationError(f"Invalid role: {role}")
    pw_error = _validate_password(password)
    if pw_error:
        raise ValidationError(pw_error)
    if User.query.filter_by(username=username).first():
        raise ValidationError("A user with this username already exists")

    business_unit_id = int_field(data, "business_unit_id")
    if business_unit_id and not db.session.get(BusinessUnit, business_unit_id):
        raise NotFound(f"Business unit {business_unit_id} not found")
    customer_id = int_field(data, "customer_id")
    if role == "customer":
        if not customer_id or not db.session.get(Customer, customer_id):
            raise ValidationError("Customer accounts must be linked to an existing customer")

    user = User(
        username=username,
        password_hash=generate_password_hash(password),
        full_name=(data.get("full_name") or "").strip() or None,
        role=role,
        business_unit_id=business_unit_id,
        customer_id=customer_id if role == "customer" else None,
        must_change_password=True,
    )
    db.session.add(user)
    db.session.flush()
    log_action("create", "user", user.id, f"created user {username} ({role})")
    db.session.commit()
    return jsonify({"success": True, "user": _user_dict(user)}), 201
