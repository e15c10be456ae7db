"""Authentication and authorization services."""

from __future__ import annotations

import logging
import secrets
from functools import wraps
from typing import Optional

from flask import g, jsonify
from werkzeug.security import generate_password_hash

from extensions import db
from models import ROLE_PERMISSIONS, Subscription, User

logger = logging.getLogger(__name__)


def get_current_user() -> Optional[User]:
    """Return the currently logged-in user from ``flask.g``."""
    return getattr(g, "current_user", None)


def has_permission(user: Optional[User], permission: str) -> bool:
    if not user:
        return False
    permissions = ROLE_PERMISSIONS.get(user.role, set())
    return permission in permissions or "manage_all" in permissions


def can_access_subscription(user: Optional[User], subscription: Subscription) -> bool:
    """Staff see every subscription; customers only their own."""
    if not user:
        return False
    if user.role == "customer":
        return subscription.customer_id == user.customer_id
    return True


def login_required(f):
    """Decorator that returns 401 if the user is not authenticated."""

    @wraps(f)
    def decorated(*args, **kwargs):
        if not get_current_user():
            return jsonify({"success": False, "error": "Authentication required"}), 401
        return f(*args, **kwargs)

    return decorated


def role_required(permission: str):
    """Decorator that checks user has *permission* (or ``manage_all``)."""

    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            user = get_current_user()
            if not user:
                return jsonify({"success": False, "error": "Authentication required"}), 401
            if not has_permission(user, permission):
                return jsonify({"success": False, "error": "Permission denied"}), 403
            return f(*args, **kwargs)

        return decorated

    return decorator


def ensure_admin_user():
    """Create a default super admin if the users table is empty."""
    if User.query.count() == 0:
        password = secrets.token_urlsafe(12)
        admin = User(
            username="admin",
            password_hash=generate_password_hash(password),
            full_name="Administrator",
            role="super_admin",
            must_change_password=True,
        )
        db.session.add(admin)
        db.session.commit()
        # Print to stdout only, never log credentials to persistent log files
        print(
            f"Created default admin user. Initial password: {password} "
            "(change immediately after first login)"
        )
