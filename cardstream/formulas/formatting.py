"""
CardStream Number Formatting

Fixed display format for calculation results: thousands grouped by a
space, decimal comma, unit appended after one space.

    format_number(122.5, "kWh")     -> "122,5 kWh"
    format_number(12345.678, "€")   -> "12 345,68 €"
    parse_formatted("122,5 kWh")    -> 122.5
"""

from __future__ import annotations
from typing import Any, Optional
import math
import re

from cardstream.formulas.evaluator import round_half_up, to_text

DEFAULT_MAX_DECIMALS = 2
THOUSANDS_SEPARATOR = " "
DECIMAL_SEPARATOR = ","

_GROUP_CHARS = (" ", "\u00a0", "\u202f")
_NUMERIC_INPUT = re.compile(r"^[+-]?(\d+([.,]\d*)?|[.,]\d+)$")


def _group(digits: str) -> str:
    groups = []
    while len(digits) > 3:
        groups.insert(0, digits[-3:])
        digits = digits[:-3]
    groups.insert(0, digits)
    return THOUSANDS_SEPARATOR.join(groups)


def format_number(
    value: Any,
    unit: Optional[str] = None,
    decimals: Optional[int] = None,
    max_decimals: int = DEFAULT_MAX_DECIMALS,
) -> str:
    """
    Format a result for display.

    Args:
        value: Number (or text, which is passed through)
        unit: Appended after one space when given
        decimals: Fixed number of decimals; when None, up to
            ``max_decimals`` with trailing zeros removed

    Returns:
        Display string
    """
    if isinstance(value, bool):
        value = int(value)

    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError(f"Cannot format non-finite value {value}")

        places = max_decimals if decimals is None else decimals
        rounded = round_half_up(float(value), places)
        text = f"{abs(rounded):.{places}f}"
        integer_part, _, fraction = text.partition(".")
        if decimals is None:
            fraction = fraction.rstrip("0")

        body = _group(integer_part)
        if fraction:
            body = f"{body}{DECIMAL_SEPARATOR}{fraction}"
        if rounded < 0:
            body = f"-{body}"
    else:
        body = to_text(value)

    if unit:
        return f"{body} {unit}"
    return body


def parse_formatted(text: str, unit: Optional[str] = None) -> float:
    """
    Inverse of format_number for numeric output.

    Raises:
        ValueError: if the text is not a formatted number
    """
    body = str(text).strip()
    if unit and body.endswith(unit):
        body = body[: -len(unit)].rstrip()
    for ch in _GROUP_CHARS:
        body = body.replace(ch, "")
    body = body.replace(DECIMAL_SEPARATOR, ".")
    return float(body)


def parse_number_input(value: Any) -> Optional[float]:
    """
    Interpret a user supplied value as a number.

    Accepts ints/floats and strings with dot or comma decimals and
    optional space grouping ("2,5", "1 200.75"). Returns None for
    anything else, including booleans.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None

    text = value.strip()
    for ch in _GROUP_CHARS:
        text = text.replace(ch, "")
    if not _NUMERIC_INPUT.match(text):
        return None
    return float(text.replace(",", "."))
