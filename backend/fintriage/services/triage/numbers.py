"""Locale-aware number parsing for pt-BR money strings ("1.234,56", "R$ 75,30")."""

from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

_CURRENCY_NOISE_RE = re.compile(r"R\$\s?|[^0-9,.\-]", re.IGNORECASE)
_WEIGHT_NOISE_RE = re.compile(r"[^\d.,]")
# "1.500" and "12.000.000": dots that only group thousands.
_DOT_GROUPED_RE = re.compile(r"^-?\d{1,3}(?:\.\d{3})+$")

CENTS = Decimal("0.01")


def _to_decimal(clean: str, *, grouped_dots: bool = False) -> Optional[Decimal]:
    if grouped_dots and _DOT_GROUPED_RE.match(clean):
        clean = clean.replace(".", "")
    elif "," in clean and "." in clean:
        clean = clean.replace(".", "").replace(",", ".", 1)
    elif "," in clean:
        clean = clean.replace(",", ".", 1)
    try:
        parsed = Decimal(clean)
    except InvalidOperation:
        return None
    if not parsed.is_finite():
        return None
    return parsed


def parse_currency(value: Optional[str]) -> Decimal:
    """Convert '1.234,56', 'R$ 75,30', '1.500' or '12.50' into a Decimal; blank or garbage is 0.

    A dot followed by exactly three digits groups thousands; any other lone dot
    is a decimal mark.
    """
    if not value:
        return Decimal("0")
    clean = _CURRENCY_NOISE_RE.sub("", str(value))
    if not clean:
        return Decimal("0")
    parsed = _to_decimal(clean, grouped_dots=True)
    if parsed is None:
        return Decimal("0")
    return parsed


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_weight(value: Optional[str]) -> Optional[Decimal]:
    """'5g' -> 5, '2,5 gramas' -> 2.5; None when nothing numeric remains."""
    if not value:
        return None
    clean = _WEIGHT_NOISE_RE.sub("", str(value))
    if not clean:
        return None
    parsed = _to_decimal(clean)
    if parsed is None or parsed == 0:
        return None
    return parsed
