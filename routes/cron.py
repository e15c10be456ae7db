"""Scheduled billing endpoint called by an external cron service."""

import hmac
import logging

from flask import Blueprint, current_app, jsonify, request

from extensions import csrf
from services.invoice import get_todays_tasks, run_scheduled_tasks

logger = logging.getLogger(__name__)

cron_bp = Blueprint("cron", __name__)


def _authorized() -> bool:
    secret = current_app.config["APP_CONFIG"].cron_secret
    if not secret:
        # No secret configured: only allowed outside production
        return not current_app.config.get("IS_PRODUCTION", False)
    header = request.headers.get("Authorization", "")
    return hmac.compare_digest(header, f"Bearer {secret}")


@cron_bp.route("/api/cron", methods=["GET"])
@csrf.exempt
def run_cron():
    if not _authorized():
        logger.warning("Rejected unauthorized cron call from %s", request.remote_addr)
        return jsonify({"error": "Unauthorized"}), 401
    results = run_scheduled_tasks()
    status = 500 if results["errors"] else 200
    return jsonify(results), status


@cron_bp.route("/api/cron/tasks", methods=["GET"])
@csrf.exempt
def todays_tasks():
    if not _authorized():
        return jsonify({"error": "Unauthorized"}), 401
    tasks = get_todays_tasks()
    return jsonify({
        "date": tasks.local_date.isoformat(),
        "generate_invoices": tasks.generate_invoices,
        "due_reminders": tasks.due_reminders,
        "disconnection_warnings": tasks.disconnection_warnings,
    })
