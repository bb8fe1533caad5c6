"""Minor-unit money helpers.

Amounts arrive from the storefront as integers in minor units (pence,
cents). These helpers only format them for display. ``estimate`` applies a
fixed, configured exchange rate and is an approximation, never an
authoritative conversion.
"""

import math
from typing import Any, Optional

CURRENCY_SYMBOLS = {
    "GBP": "£",
    "USD": "$",
    "EUR": "€",
    "CAD": "CA$",
    "AUD": "A$",
}


def _to_minor(amount: Any) -> Optional[float]:
    if amount is None or isinstance(amount, bool):
        return None
    try:
        value = float(amount)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def normalize(amount: Any, currency: str = "") -> str:
    """Format a minor-unit amount as a two-decimal major-unit string.

    Missing, zero or unparseable amounts format as ``"0.00"``.
    """
    value = _to_minor(amount)
    if not value:
        return "0.00"
    return f"{value / 100:.2f}"


def estimate(amount: Any, rate: Any, invert: bool = False) -> int:
    """Approximate ``amount`` (minor units) in another currency.

    Multiplies by ``rate`` (or divides when ``invert`` is set). The result is
    an estimate for display only.
    """
    value = _to_minor(amount)
    factor = _to_minor(rate)
    if not value or not factor or factor <= 0:
        return 0
    converted = value / factor if invert else value * factor
    return int(round(converted))


def display(amount: Any, currency: str) -> str:
    code = (currency or "").strip().upper()
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{symbol}{normalize(amount, code)}"
    return f"{normalize(amount, code)} {code}".strip()
