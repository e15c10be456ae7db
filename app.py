"""Application factory and entry point of the billing API."""

from __future__ import annotations

import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from sqlalchemy import event

from config import enable_sqlite_fks, load_config
from extensions import csrf, db, limiter
from models import User
from routes import register_blueprints
from services.auth import ensure_admin_user
from services.errors import BillingError

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Endpoints a user flagged with ``must_change_password`` may still call
_PASSWORD_CHANGE_EXEMPT = {
    "auth.login",
    "auth.logout",
    "auth.me",
    "auth.change_password",
    "auth.csrf_token",
    "cron.run_cron",
    "cron.todays_tasks",
    "static",
}


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app():
    """Create and configure the Flask application."""
    app_cfg, mikrotik_cfg, paymongo_cfg, sms_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["MIKROTIK_CONFIG"] = mikrotik_cfg
    app.config["PAYMONGO_CONFIG"] = paymongo_cfg
    app.config["SMS_CONFIG"] = sms_cfg
    app.config["IS_PRODUCTION"] = os.environ.get("FLASK_ENV") == "production"

    # Session security
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["SESSION_COOKIE_SECURE"] = (
        os.environ.get("FLASK_ENV", "") != "development"
    )
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config.setdefault(
        "RATELIMIT_STORAGE_URI", os.environ.get("RATELIMIT_STORAGE_URI", "memory://")
    )

    # Initialize extensions
    csrf.init_app(app)
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()
        ensure_admin_user()

    register_blueprints(app)

    # ------------------------------------------------------------------
    # Request hooks
    # ------------------------------------------------------------------

    @app.before_request
    def load_current_user():
        """Set ``g.current_user`` from the session."""
        g.current_user = None
        user_id = session.get("user_id")
        if user_id:
            user = db.session.get(User, user_id)
            if user and user.is_active:
                g.current_user = user
            else:
                session.clear()

    @app.before_request
    def check_password_change():
        """Block everything but the password change for flagged users."""
        if not request.endpoint or request.endpoint in _PASSWORD_CHANGE_EXEMPT:
            return None
        user = getattr(g, "current_user", None)
        if user and user.must_change_password:
            return jsonify({"success": False, "error": "Password change required"}), 403
        return None

    # ------------------------------------------------------------------
    # Security headers
    # ------------------------------------------------------------------

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "0"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = (
            "geolocation=(), camera=(), microphone=()"
        )
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; "
            "style-src 'self' 'unsafe-inline'; "
            "img-src 'self' data:; "
            "frame-ancestors 'none'"
        )
        if app.config["IS_PRODUCTION"]:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(BillingError)
    def billing_error(error):
        if error.status_code >= 500:
            logger.error("%s: %s", error.error_type, error.message)
        return (
            jsonify({"success": False, "error": error.message, "error_type": error.error_type}),
            error.status_code,
        )

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"success": False, "error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(_error):
        return jsonify({"success": False, "error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def server_error(_error):
        return jsonify({"success": False, "error": "Internal server error"}), 500

    @app.errorhandler(429)
    def ratelimit_handler(_error):
        return jsonify({"success": False, "error": "Too many attempts, try again later"}), 429

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
