"""MikroTik router status routes."""

import logging

from flask import Blueprint, jsonify

from mikrotik_client import MikrotikError
from services.auth import role_required
from services.errors import ExternalServiceError, ValidationError
from services.router_sync import get_router

logger = logging.getLogger(__name__)

mikrotik_bp = Blueprint("mikrotik", __name__)


@mikrotik_bp.route("/api/mikrotik/overview", methods=["GET"])
@role_required("manage_all")
def overview():
    router = get_router()
    if router is None:
        raise ValidationError("MikroTik integration is not configured")
    try:
        data = router.get_overview()
    except MikrotikError as e:
        raise ExternalServiceError(str(e)) from e
    return jsonify({"success": True, **data})
