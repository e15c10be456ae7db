import logging
import time
from decimal import Decimal
from typing import Iterable

import requests
from requests.exceptions import RequestException

from config_models import SmsConfig
from utils import normalize_mobile_number

logger = logging.getLogger(__name__)

BATCH_SIZE = 10


class SmsError(Exception):
    """Exception raised for SMS gateway errors."""

    pass


# ---------------------------------------------------------------------------
# Message templates
# ---------------------------------------------------------------------------

def _peso(amount) -> str:
    return f"P{Decimal(str(amount)):,.2f}"


def invoice_generated_message(name: str, amount, due_date: str, invoice_number: str) -> str:
    return (
        f"Hi {name}, your invoice {invoice_number} for {_peso(amount)} is ready. "
        f"Please pay on or before {due_date}. Thank you!"
    )


def due_date_reminder_message(name: str, amount, due_date: str) -> str:
    return (
        f"Hi {name}, this is a reminder that your bill of {_peso(amount)} "
        f"is due today ({due_date}). Please settle to avoid disconnection."
    )


def disconnection_warning_message(name: str, amount, disconnection_date: str) -> str:
    return (
        f"Hi {name}, your account has an unpaid balance of {_peso(amount)}. "
        f"Service will be disconnected on {disconnection_date} unless paid."
    )


def payment_received_message(name: str, amount, balance) -> str:
    return (
        f"Hi {name}, we received your payment of {_peso(amount)}. "
        f"Remaining balance: {_peso(balance)}. Thank you!"
    )


def new_subscription_message(name: str, plan_name: str) -> str:
    return f"Welcome {name}! Your {plan_name} internet subscription is now active."


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------

def send_sms(config: SmsConfig, number: str, message: str) -> bool:
    """Send one SMS through the Semaphore API.

    Args:
        config: SMS configuration.
        number: Local (``09...``) or international (``639...``) mobile number.
        message: Message text.

    Returns:
        True if the gateway accepted the message, False when SMS is disabled.

    Raises:
        SmsError: If the gateway rejects the request or cannot be reached.
    """
    if not config.enabled or not config.api_key:
        logger.info("SMS disabled, not sending message to %s", number)
        return False
    if not number:
        raise SmsError("Mobile number is required")

    payload = {
        "apikey": config.api_key,
        "number": normalize_mobile_number(number),
        "message": message,
        "sendername": config.sender_name,
    }
    try:
        response = requests.post(f"{config.base_url}/messages", data=payload, timeout=30)
        response.raise_for_status()
    except requests.exceptions.Timeout as e:
        logger.error("Timeout while sending SMS to %s", payload["number"])
        raise SmsError("Connection to SMS gateway timed out") from e
    except requests.exceptions.HTTPError as e:
        logger.error("SMS gateway error for %s: %s", payload["number"], e)
        raise SmsError(f"SMS gateway error: {e}") from e
    except RequestException as e:
        logger.error("SMS request failed for %s: %s", payload["number"], e)
        raise SmsError(f"Request to SMS gateway failed: {e}") from e

    logger.info("SMS sent to %s", payload["number"])
    return True


def send_bulk_sms(
    config: SmsConfig,
    messages: Iterable[tuple[str, str]],
    batch_delay: float = 1.0,
) -> dict:
    """Send ``(number, message)`` pairs in batches of ten.

    Returns a dict with ``sent``, ``failed`` and ``errors``.  Failures of
    individual messages do not stop the run.
    """
    result = {"sent": 0, "failed": 0, "errors": []}
    pending = list(messages)
    for offset in range(0, len(pending), BATCH_SIZE):
        if offset and batch_delay:
            time.sleep(batch_delay)
        for number, message in pending[offset:offset + BATCH_SIZE]:
            try:
                if send_sms(config, number, message):
                    result["sent"] += 1
            except SmsError as e:
                result["failed"] += 1
                result["errors"].append(f"{number}: {e}")
    return result
