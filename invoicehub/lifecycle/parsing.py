"""Best-effort parsing of extracted field text into typed invoice columns.

Parse failures return None; they never raise.
"""

import logging
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
# Numeric(12, 2) columns hold at most ten integer digits
MAX_AMOUNT = Decimal(10) ** 10

# Day-first before month-first: the export target is a European ledger
DATE_FORMATS = [
    "%Y-%m-%d",  # 2025-11-26
    "%d/%m/%Y",  # 26/11/2025
    "%m/%d/%Y",  # 11/26/2025
    "%d.%m.%Y",  # 26.11.2025
    "%d-%m-%Y",  # 26-11-2025
    "%B %d, %Y",  # November 26, 2025
    "%b %d, %Y",  # Nov 26, 2025
    "%d %B %Y",  # 26 November 2025
    "%d %b %Y",  # 26 Nov 2025
]

_CURRENCY = re.compile(r"[$€£]|[A-Za-z]{3}")
_DOT_THOUSANDS = re.compile(r"^-?[1-9]\d{0,2}(\.\d{3})+$")


def parse_decimal(value_str: str | None) -> Decimal | None:
    """Parse an amount in US or European notation.

    Handles "1,234.56", "1.234,56", "234,56", "1.234" and "1 234,56"; currency
    symbols are ignored. When both separators appear, the last one is the
    decimal separator. A lone comma followed by more than two digits, or dots
    that only separate three-digit groups ("1.234.567"), mark thousands.

    Args:
        value_str: Amount text (e.g., "294.00", "49,00", "€ 1.020,50")

    Returns:
        Decimal rounded to cents, or None if invalid, empty or too large for
        an amount column
    """
    if not value_str or not value_str.strip():
        return None

    cleaned = _CURRENCY.sub("", value_str)
    cleaned = re.sub(r"[\s ']", "", cleaned)

    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        parts = cleaned.split(",")
        if len(parts) == 2 and len(parts[1]) <= 2 and parts[1].isdigit():
            cleaned = cleaned.replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif _DOT_THOUSANDS.match(cleaned):
        cleaned = cleaned.replace(".", "")

    try:
        value = Decimal(cleaned)
        if not value.is_finite() or abs(value) >= MAX_AMOUNT:
            logger.debug(f"Amount out of range: {value_str}")
            return None
        return value.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        logger.debug(f"Could not parse decimal: {value_str}")
        return None


def parse_date(date_str: str | None) -> date | None:
    """Parse date string in multiple common formats."""
    if not date_str or not date_str.strip():
        return None
    text = date_str.strip()
    # Accept ISO timestamps by keeping the date part
    if re.match(r"^\d{4}-\d{2}-\d{2}T", text):
        text = text[:10]

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    logger.debug(f"Could not parse date: {date_str}")
    return None
