"""Numeric extraction from noisy, label-adjacent text fragments.

"Not reported" markers map to ``None``; zero is only ever returned when the
source actually printed a zero.
"""

from __future__ import annotations

import re
import unicodedata
from decimal import Decimal, InvalidOperation
from typing import Optional

from stock_harvest.errors import MalformedFieldError

_NOT_REPORTED = {"", "-", "--", "---", "—", "–", "n/a", "na", "x", "null", "none"}

_NUMBER_RE = re.compile(
    r"(?P<sign>[-+])?\s?(?P<int>\d{1,3}(?:,\d{3})+|\d+)?(?:\.(?P<frac>\d+))?"
)

_UNIT_MULTIPLIERS = {
    "萬": Decimal(10) ** 4,
    "億": Decimal(10) ** 8,
}


def _normalize(fragment: str) -> str:
    # NFKC folds full-width digits, commas and the full-width hyphen-minus.
    text = unicodedata.normalize("NFKC", str(fragment))
    return text.replace("−", "-").strip()


def is_not_reported(fragment: Optional[str]) -> bool:
    """Return ``True`` for empty, whitespace-only and dash-like fragments."""
    if fragment is None:
        return True
    return _normalize(fragment).lower() in _NOT_REPORTED


def _first_number(text: str) -> Optional[re.Match]:
    for match in _NUMBER_RE.finditer(text):
        if match.group("int") is None and match.group("frac") is None:
            continue
        return match
    return None


def extract_decimal(fragment: Optional[str]) -> Optional[Decimal]:
    """Extract the first number in ``fragment`` as a ``Decimal``.

    Thousands separators and a leading sign are honoured; surrounding label
    text is ignored. A trailing ``%`` is dropped without scaling. A trailing
    ``萬`` / ``億`` unit multiplies the value.

    Returns ``None`` when the fragment is a "not reported" marker or holds no
    parseable number.
    """
    if is_not_reported(fragment):
        return None
    text = _normalize(fragment)
    match = _first_number(text)
    if match is None:
        return None

    digits = (match.group("int") or "0").replace(",", "")
    frac = match.group("frac")
    literal = f"{match.group('sign') or ''}{digits}" + (f".{frac}" if frac else "")
    try:
        value = Decimal(literal)
    except InvalidOperation:
        return None

    tail = text[match.end() :].lstrip()
    if tail[:1] in _UNIT_MULTIPLIERS:
        value = value * _UNIT_MULTIPLIERS[tail[:1]]
    return value


def extract_int(fragment: Optional[str], field: str = "value") -> Optional[int]:
    """Extract an integer; raise ``MalformedFieldError`` for fractional values."""
    value = extract_decimal(fragment)
    if value is None:
        return None
    if value != value.to_integral_value():
        raise MalformedFieldError(field, str(fragment), "expected an integer")
    return int(value)
