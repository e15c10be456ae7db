"""SMS notifications that never interrupt billing."""

from __future__ import annotations

import logging
from typing import Iterable

from flask import current_app

from sms import SmsError, send_bulk_sms, send_sms

logger = logging.getLogger(__name__)


def notify(number: str, message: str) -> bool:
    """Send one SMS; gateway failures are logged and reported as ``False``."""
    if not number:
        return False
    try:
        return send_sms(current_app.config["SMS_CONFIG"], number, message)
    except SmsError as e:
        logger.warning("SMS notification failed: %s", e)
        return False


def notify_many(messages: Iterable[tuple[str, str]]) -> int:
    """Send ``(number, message)`` pairs; returns the number sent."""
    messages = [(number, text) for number, text in messages if number]
    if not messages:
        return 0
    result = send_bulk_sms(
        current_app.config["SMS_CONFIG"],
        messages,
        batch_delay=current_app.config.get("SMS_BATCH_DELAY", 1.0),
    )
    for error in result["errors"]:
        logger.warning("SMS notification failed: %s", error)
    return result["sent"]
