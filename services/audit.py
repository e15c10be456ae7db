"""Audit trail of staff actions on billing records."""

from __future__ import annotations

import logging
from typing import Optional

from extensions import db
from models import AuditLog
from services.auth import get_current_user
from services.errors import ValidationError

logger = logging.getLogger(__name__)

AUDITED_ENTITIES = {
    "user",
    "business_unit",
    "plan",
    "customer",
    "subscription",
    "invoice",
    "payment",
    "expense",
}


def log_action(
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    details: str = "",
) -> AuditLog:
    """Record who did *action* to an entity.

    Does not commit; the entry is persisted with the caller's transaction,
    so a rolled-back billing change leaves no audit row behind.
    """
    if entity_type not in AUDITED_ENTITIES:
        raise ValueError(f"Unknown audited entity type: {entity_type}")
    user = get_current_user()
    entry = AuditLog(
        user_id=user.id if user else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
    )
    db.session.add(entry)
    logger.info(
        "%s %s %s %s by %s",
        action, entity_type, entity_id if entity_id is not None else "-",
        details, user.username if user else "system",
    )
    return entry


def audit_trail(entity_type: str, entity_id: Optional[int] = None, limit: int = 50) -> list[dict]:
    """Most recent audit entries for an entity type (optionally one record)."""
    if entity_type not in AUDITED_ENTITIES:
        raise ValidationError(f"Unknown entity type: {entity_type}")
    query = AuditLog.query.filter(AuditLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AuditLog.entity_id == entity_id)
    entries = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
    return [
        {
            "id": e.id,
            "action": e.action,
            "entity_type": e.entity_type,
            "entity_id": e.entity_id,
            "details": e.details,
            "user": e.user.username if e.user else None,
            "created_at": e.created_at.isoformat() if e.created_at else None,
        }
        for e in entries
    ]
