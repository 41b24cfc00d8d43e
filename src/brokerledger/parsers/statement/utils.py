"""
Value parsing helpers for broker statement tables.

Statements use Russian number and date conventions: "1 234,56" for
decimals (regular or non-breaking space as group separator) and
dd.mm.yyyy for dates. A dash or an empty cell means "no value".
"""

import re
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Optional

from brokerledger.core.models import is_isin_shaped


DATE_PATTERN = re.compile(r"\b(\d{2}\.\d{2}\.\d{4})\b")

_EMPTY_MARKERS = {"", "-", "—"}
_SPACES = re.compile(r"[\s  ]+")


def clean_text(value: Optional[str]) -> str:
    """Collapse whitespace runs (including non-breaking spaces) to one space."""
    if value is None:
        return ""
    return _SPACES.sub(" ", value).strip()


def is_blank(value: Optional[str]) -> bool:
    return clean_text(value) in _EMPTY_MARKERS


def parse_decimal(value: Optional[str], default: Optional[Decimal] = Decimal("0")) -> Optional[Decimal]:
    """
    Parse a statement number.

    Args:
        value: Cell text such as "1 015,50"
        default: Returned for blank cells and dashes

    Returns:
        Decimal value or default

    Raises:
        ValueError: If the text is not a number
    """
    if is_blank(value):
        return default
    normalized = _SPACES.sub("", value).replace(",", ".")
    try:
        return Decimal(normalized)
    except InvalidOperation:
        raise ValueError(f"Not a number: {value!r}")


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse a dd.mm.yyyy date; blank gives None, garbage raises ValueError."""
    if is_blank(value):
        return None
    return datetime.strptime(clean_text(value), "%d.%m.%Y").date()


def parse_time(value: Optional[str]) -> Optional[time]:
    """Parse HH:MM:SS (HH:MM also accepted)."""
    if is_blank(value):
        return None
    text = clean_text(value)
    for fmt in ("%H:%M:%S", "%H:%M"):
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    raise ValueError(f"Not a time: {value!r}")


def isin_checksum_ok(isin: str) -> bool:
    """
    Verify the ISIN check digit (Luhn over the letter-expanded digits).

    >>> isin_checksum_ok("RU0009062285")
    True
    """
    if not is_isin_shaped(isin):
        return False
    isin = isin.upper()
    digits = "".join(str(int(ch, 36)) for ch in isin[:-1])
    total = 0
    # Double every other digit, starting from the rightmost payload digit
    for i, ch in enumerate(reversed(digits)):
        n = int(ch)
        if i % 2 == 0:
            n *= 2
            if n > 9:
                n -= 9
        total += n
    return (10 - total % 10) % 10 == int(isin[-1])


def normalize_name(value: Optional[str]) -> str:
    """Lower-case and strip all whitespace for tolerant name comparison."""
    if not value:
        return ""
    return _SPACES.sub("", value).lower()


def extract_contract_number(text: str) -> Optional[str]:
    """
    Extract the contract number from a "Договор ..." line.

    The number sits between "счета " and " от ", e.g.
    "Договор на ведение индивидуального инвестиционного счета 12345/19-ИИС от 01.02.2019".
    When that marker is absent, the last word before " от " is used.
    """
    if not text:
        return None
    text = clean_text(text)

    marker = "счета "
    start = text.find(marker)
    if start >= 0:
        start += len(marker)
        end = text.find(" от ", start)
        number = text[start:end] if end >= 0 else text[start:].split(" ")[0]
        number = number.strip()
        if number:
            return number

    contract_pos = text.find("Договор")
    if contract_pos >= 0:
        end = text.find(" от ", contract_pos)
        if end > contract_pos:
            words = text[contract_pos:end].split()
            if len(words) > 1:
                return words[-1]
    return None
