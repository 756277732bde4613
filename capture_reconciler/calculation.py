"""
Calculation verifier — do the line items add up to the document total?

Amount columns and total anchors are found by name, so the check works
across invoice schemas without configuration. Anything indeterminate
(no amounts, no anchor) skips the check; it is never a failure.
"""

from __future__ import annotations

import logging
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from .config import settings
from .models import CalculationCheck, LineItem

logger = logging.getLogger(__name__)

AMOUNT_COLUMN_HINTS = ("total", "amount", "price", "extended", "subtotal")
TOTAL_FIELD_HINTS = ("total", "amount", "grand", "balance", "due")

_CENTS = Decimal("0.01")
_LEADING_NUMBER_RE = re.compile(r"^[-+]?(\d+(\.\d*)?|\.\d+)")


def parse_amount(value: Any) -> Optional[Decimal]:
    """Leading numeric value of a money string ("$1,250.00" → 1250.00), or None."""
    if value is None or isinstance(value, bool):
        return None
    text = str(value).replace("$", "").replace(",", "").strip()
    match = _LEADING_NUMBER_RE.match(text)
    if not match:
        return None
    try:
        return Decimal(match.group(0))
    except InvalidOperation:
        return None


def _hinted(name: str, hints: Iterable[str]) -> bool:
    lowered = name.lower()
    return any(h in lowered for h in hints)


def sum_line_items(line_items: list[LineItem]) -> Optional[Decimal]:
    """Sum of the first non-zero amount-like value of each row; None if no row has one."""
    total = Decimal("0")
    found = False
    for item in line_items:
        for name, value in item.items():
            if not _hinted(name, AMOUNT_COLUMN_HINTS):
                continue
            amount = parse_amount(value)
            if amount is not None and amount != 0:
                total += amount
                found = True
                break
    return total if found else None


def document_total(metadata: dict[str, Any]) -> Optional[Decimal]:
    """First positive total-like metadata value, in declaration order.

    Underscore-prefixed keys are derived values and never anchor the check.
    """
    for name, value in metadata.items():
        if name.startswith("_") or not _hinted(name, TOTAL_FIELD_HINTS):
            continue
        amount = parse_amount(value)
        if amount is not None and amount > 0:
            return amount
    return None


def verify_calculation(
    line_items: list[LineItem],
    metadata: dict[str, Any],
    tolerance: float | None = None,
) -> Optional[CalculationCheck]:
    """Compare the line-item sum against the document total."""
    if not line_items:
        return None

    items_total = sum_line_items(line_items)
    if items_total is None:
        logger.debug("Calculation check skipped: no line-item amounts")
        return None

    anchor = document_total(metadata)
    if anchor is None:
        logger.debug("Calculation check skipped: no document total")
        return None

    tol = Decimal(str(tolerance if tolerance is not None else settings.CALCULATION_TOLERANCE))
    variance = abs(items_total - anchor)
    percent = variance / anchor * 100

    return CalculationCheck(
        line_items_total=items_total.quantize(_CENTS, rounding=ROUND_HALF_UP),
        document_total=anchor.quantize(_CENTS, rounding=ROUND_HALF_UP),
        variance=variance.quantize(_CENTS, rounding=ROUND_HALF_UP),
        variance_percent=percent.quantize(_CENTS, rounding=ROUND_HALF_UP),
        matches=variance < tol,
    )


def calculation_fields(check: CalculationCheck) -> dict[str, str]:
    """Flattened form stored beside the extracted metadata."""
    return {
        "_calculatedLineItemsTotal": str(check.line_items_total),
        "_invoiceTotal": str(check.document_total),
        "_calculationVariance": str(check.variance),
        "_calculationVariancePercent": str(check.variance_percent),
        "_calculationMatch": "true" if check.matches else "false",
    }
