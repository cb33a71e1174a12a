# receipt_scanner/formatters.py
from __future__ import annotations

from typing import Any, Iterable

_SYMBOLS = {
    "PHP": "₱",
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
}


def format_currency(amount: Any, currency: str = "PHP") -> str:
    """₱1,234.50 style. Anything non-numeric formats as zero."""
    try:
        value = float(amount)
    except (TypeError, ValueError):
        value = 0.0
    symbol = _SYMBOLS.get((currency or "").upper(), f"{currency} ")
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.2f}"


def format_items(items: Iterable[Any]) -> str:
    """'Tea ($4.00), Cake ($6.00)' for the spreadsheet log."""
    parts = []
    for item in items or []:
        if hasattr(item, "model_dump"):
            item = item.model_dump()
        name = item.get("name") or ""
        try:
            price = float(item.get("price") or 0)
        except (TypeError, ValueError):
            price = 0.0
        parts.append(f"{name} (${price:.2f})")
    return ", ".join(parts)
