"""Tag-based invoice numbering.

Supported tags:
  [YYYY]    4-digit year
  [YY]      2-digit year
  [MM]      month (01-12)
  [DD]      day (01-31)
  [C+]      counter, number of C's = digit width (resets per scope)

Everything outside brackets is literal text.
Example: ``INV[YY][MM]-[CCCC]`` -> ``INV2601-0001``
"""

from __future__ import annotations

import datetime
import re
from typing import Optional

from flask import current_app

from extensions import db
from models import NumberSequence

_TAG_RE = re.compile(r"\[([A-Z]+)\]")

DEFAULT_INVOICE_PATTERN = "INV[YY][MM]-[CCCC]"


def _next_sequence(entity_type: str, scope_key: str) -> int:
    """Atomically increment and return the next sequence value."""
    seq = NumberSequence.query.filter_by(
        entity_type=entity_type, scope_key=scope_key
    ).with_for_update().first()
    if not seq:
        seq = NumberSequence(
            entity_type=entity_type, scope_key=scope_key, last_value=1
        )
        db.session.add(seq)
        db.session.flush()
        return 1
    # SQL-side increment so concurrent writers cannot reuse a value
    seq.last_value = NumberSequence.last_value + 1
    db.session.flush()
    db.session.refresh(seq)
    return seq.last_value


def format_number(entity_type: str, pattern: str, on_date: datetime.date) -> str:
    """Expand *pattern* for *on_date*, drawing the counter from the sequence table."""
    scope_parts: list[str] = []
    result_parts: list[Optional[str]] = []
    counter_digits = 0
    counter_pos = -1
    last_end = 0

    for match in _TAG_RE.finditer(pattern):
        tag = match.group(1)
        start, end = match.start(), match.end()
        if start > last_end:
            result_parts.append(pattern[last_end:start])

        if tag == "YYYY":
            val = str(on_date.year)
        elif tag == "YY":
            val = str(on_date.year % 100).zfill(2)
        elif tag == "MM":
            val = f"{on_date.month:02d}"
        elif tag == "DD":
            val = f"{on_date.day:02d}"
        elif all(c == "C" for c in tag):
            counter_digits = len(tag)
            counter_pos = len(result_parts)
            result_parts.append(None)
            last_end = end
            continue
        else:
            # Unknown tag, keep as literal
            result_parts.append(match.group(0))
            last_end = end
            continue

        result_parts.append(val)
        scope_parts.append(val)
        last_end = end

    if last_end < len(pattern):
        result_parts.append(pattern[last_end:])

    if counter_pos >= 0:
        seq = _next_sequence(entity_type, "-".join(scope_parts))
        result_parts[counter_pos] = str(seq).zfill(counter_digits)

    return "".join(p for p in result_parts if p is not None)


def generate_invoice_number(on_date: Optional[datetime.date] = None) -> str:
    """Next invoice number for the month of *on_date* (default today)."""
    pattern = current_app.config["APP_CONFIG"].invoice_number_pattern or DEFAULT_INVOICE_PATTERN
    return format_number("invoice", pattern, on_date or datetime.date.today())
