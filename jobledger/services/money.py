"""Fixed-point money helpers. Every balance decision goes through approx_equal/exceeds."""
from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

from jobledger.services.errors import InvalidAmount

CENT = Decimal("0.01")
EPSILON = Decimal("0.01")
ZERO = Decimal("0.00")

_STRIP_RE = re.compile(r"[\s$,]")


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _finite(value: Decimal, text: Any) -> Decimal:
    if not value.is_finite():
        raise InvalidAmount(text)
    return value


def _exact(text: Any) -> Decimal:
    """Parse to an unrounded Decimal. NaN and infinities raise InvalidAmount."""
    if text is None:
        return ZERO
    if isinstance(text, Decimal):
        return _finite(text, text)
    if isinstance(text, int) and not isinstance(text, bool):
        return Decimal(text)
    if isinstance(text, float):
        return _finite(Decimal(repr(text)), text)

    raw = str(text).strip()
    if not raw:
        return ZERO

    negative = False
    if raw.startswith("(") and raw.endswith(")"):
        negative = True
        raw = raw[1:-1]
    cleaned = _STRIP_RE.sub("", raw)
    if cleaned.startswith("-"):
        negative = not negative
        cleaned = cleaned[1:].lstrip("$")
    if not cleaned or not re.fullmatch(r"\d*\.?\d*", cleaned) or cleaned == ".":
        raise InvalidAmount(text)
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        raise InvalidAmount(text)
    return -value if negative else value


def to_decimal(value: Any) -> Decimal:
    """Coerce stored/DB values (str, int, float, Decimal, None) to cents."""
    if value is None or value == "":
        return ZERO
    return quantize(_exact(value))


def parse_amount(text: Any) -> Decimal:
    """
    Parse user-entered currency text.

    "$1,234.50" -> 1234.50, "(50.00)" -> -50.00, "" -> 0.00.
    """
    return quantize(_exact(text))


def format_amount(value: Any) -> str:
    amount = to_decimal(value)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def approx_equal(a: Any, b: Any) -> bool:
    return abs(_exact(a) - _exact(b)) < EPSILON


def exceeds(a: Any, b: Any) -> bool:
    """True when a is greater than b by at least one cent."""
    return _exact(a) - _exact(b) >= EPSILON


def total(values: Iterable[Any]) -> Decimal:
    return quantize(sum((to_decimal(v) for v in values), ZERO))


def serialize(value: Any) -> Any:
    """Render Decimals as "1234.50" throughout a record/response."""
    if isinstance(value, Decimal):
        return f"{quantize(value):.2f}"
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value
