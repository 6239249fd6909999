"""Numeric coercion policy shared by the rollup and formula engines.

There is exactly one rule for turning cell values into numbers:

- ``None``, blank strings, and anything that does not parse coerce to ``0``.
- ``bool`` coerces to ``0``/``1``.
- Strings are stripped and thousands separators (``,``) are removed before
  parsing, so ``"1,234.5"`` is ``1234.5``.
- ``NaN`` is treated as absent.

``coerce_number`` applies the rule leniently (never raises).  ``parse_number``
is the strict variant used when a numeric column is edited: blanks become
``None`` and uncoercible input raises ``NonNumericInput``.
"""

from __future__ import annotations

import math
from typing import Any

from bomgrid.errors import NonNumericInput


def _parse_text(text: str) -> int | float | None:
    s = text.strip().replace(",", "")
    if not s:
        return None
    try:
        return int(s)
    except ValueError:
        pass
    try:
        num = float(s)
    except ValueError:
        return None
    if math.isnan(num):
        return None
    return num


def parse_number(value: Any, column: str | None = None) -> int | float | None:
    """Strictly parse *value* for storage in a numeric column.

    Returns:
        The parsed number, or ``None`` for blank input.

    Raises:
        NonNumericInput: If *value* is not blank and cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return value
    if isinstance(value, str):
        if not value.strip():
            return None
        parsed = _parse_text(value)
        if parsed is None:
            raise NonNumericInput(value, column)
        return parsed
    raise NonNumericInput(value, column)


def coerce_number(value: Any) -> int | float:
    """Leniently coerce *value* to a number; absent or malformed input is ``0``."""
    try:
        parsed = parse_number(value)
    except NonNumericInput:
        return 0
    return 0 if parsed is None else parsed


def parse_clipboard_value(value: Any) -> Any:
    """Convert one pasted clipboard value.

    Blank input becomes ``None``; numeric text (with optional thousands
    separators) becomes a number; everything else passes through untouched.
    """
    if value is None:
        return None
    if isinstance(value, str):
        if value == "":
            return None
        parsed = _parse_text(value)
        return value if parsed is None else parsed
    return value
