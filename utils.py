"""Utility / helper functions used across the application."""

from __future__ import annotations

import calendar
import datetime
import logging
import re
from datetime import timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def parse_date(raw: Optional[str]) -> Optional[datetime.date]:
    if not raw:
        return None
    try:
        return datetime.datetime.strptime(raw, "%Y-%m-%d").date()
    except (ValueError, TypeError):
        logger.warning("Could not parse date: %r", raw)
        return None


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(year: int, month: int, delta: int) -> tuple[int, int]:
    """Shift a (year, month) pair by *delta* months."""
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default


def safe_decimal(value, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Convert *value* to ``Decimal``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        logger.warning("Could not convert %r to Decimal, using default %s", value, default)
        return default


def money(value) -> Decimal:
    """Round *value* to centavos using round-half-up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Mobile numbers
# ---------------------------------------------------------------------------

def validate_mobile_number(number: Optional[str]) -> Optional[str]:
    """Return an error message if *number* is not a ``09XXXXXXXXX`` mobile, else None."""
    cleaned = re.sub(r"[\s-]", "", number or "")
    if not cleaned:
        return "Mobile number is required"
    if not cleaned.isdigit():
        return "Mobile number must contain only digits"
    if not cleaned.startswith("09"):
        return "Mobile number must start with 09"
    if len(cleaned) != 11:
        return "Mobile number must be exactly 11 digits"
    return None


def normalize_mobile_number(number: str) -> str:
    """Convert a local mobile number to the ``63XXXXXXXXXX`` international form."""
    cleaned = re.sub(r"\D", "", number or "")
    if cleaned.startswith("0"):
        cleaned = "63" + cleaned[1:]
    if not cleaned.startswith("63"):
        cleaned = "63" + cleaned
    return cleaned
