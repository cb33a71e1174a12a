# receipt_scanner/services/viewer_service.py
from __future__ import annotations

import calendar
from collections import OrderedDict
from datetime import date as date_cls
from typing import Dict, Iterable, List, Optional, Tuple

from receipt_scanner.schemas import ReceiptData, ReceiptsView

SORT_KEYS = ("date", "merchant_name", "total")
DIRECTIONS = ("asc", "desc")


# -----------------------------------------------------------------------------
# Months
# -----------------------------------------------------------------------------

def month_key(date: str) -> str:
    """'2025-01-15' -> '2025-01'"""
    return (date or "")[:7]


def group_by_month(receipts: Iterable[ReceiptData]) -> Dict[str, List[ReceiptData]]:
    grouped: Dict[str, List[ReceiptData]] = {}
    for r in receipts:
        grouped.setdefault(month_key(r.date), []).append(r)
    return grouped


def available_months(receipts: Iterable[ReceiptData]) -> List[str]:
    """Distinct YYYY-MM keys, newest first."""
    return sorted({month_key(r.date) for r in receipts if month_key(r.date)}, reverse=True)


def default_month(months: List[str], today: Optional[date_cls] = None) -> Optional[str]:
    if not months:
        return None
    current = (today or date_cls.today()).isoformat()[:7]
    return current if current in months else months[0]


def format_month_year(month: str) -> str:
    """'2025-01' -> 'January 2025'"""
    if not month:
        return ""
    try:
        year, mon = month.split("-")[:2]
        return f"{calendar.month_name[int(mon)]} {int(year)}"
    except (ValueError, IndexError):
        return month


def months_by_year(months: Iterable[str]) -> "OrderedDict[str, List[str]]":
    """Year -> months (both newest first), for the grouped month picker."""
    groups: Dict[str, List[str]] = {}
    for m in months:
        groups.setdefault(m.split("-")[0], []).append(m)

    out: "OrderedDict[str, List[str]]" = OrderedDict()
    for year in sorted(groups, key=lambda y: int(y) if y.isdigit() else 0, reverse=True):
        out[year] = sorted(groups[year], reverse=True)
    return out


def search_months(months: Iterable[str], query: str) -> "OrderedDict[str, List[str]]":
    """Month picker search: matches month name, 'Month YYYY' or the year."""
    q = (query or "").strip().lower()
    grouped = months_by_year(months)
    if not q:
        return grouped

    out: "OrderedDict[str, List[str]]" = OrderedDict()
    for year, ms in grouped.items():
        hits = [m for m in ms if q in format_month_year(m).lower() or q in year]
        if hits:
            out[year] = hits
    return out


# -----------------------------------------------------------------------------
# Filter + sort
# -----------------------------------------------------------------------------

def filter_receipts(
    receipts: Iterable[ReceiptData],
    month: Optional[str] = None,
    search: str = "",
) -> List[ReceiptData]:
    """Restrict to one YYYY-MM month (when given) and a merchant substring."""
    needle = (search or "").lower()
    out = []
    for r in receipts:
        if month and month_key(r.date) != month:
            continue
        if needle and needle not in (r.merchant_name or "").lower():
            continue
        out.append(r)
    return out


def _sort_value(r: ReceiptData, key: str):
    if key == "merchant_name":
        return (r.merchant_name or "").casefold()
    if key == "total":
        return float(r.total or 0)
    return r.date or ""


def sort_receipts(receipts: Iterable[ReceiptData], key: str = "date", direction: str = "desc") -> List[ReceiptData]:
    # sorted() is stable for reverse=True too: ties keep their input order
    if key not in SORT_KEYS:
        raise ValueError(f"Unknown sort key: {key}")
    if direction not in DIRECTIONS:
        raise ValueError(f"Unknown sort direction: {direction}")
    return sorted(receipts, key=lambda r: _sort_value(r, key), reverse=(direction == "desc"))


def next_sort(current_key: str, current_direction: str, clicked_key: str) -> Tuple[str, str]:
    """Header click: same column flips direction, a new column starts at its default."""
    if clicked_key == current_key:
        return current_key, ("desc" if current_direction == "asc" else "asc")
    return clicked_key, ("asc" if clicked_key == "merchant_name" else "desc")


def monthly_total(receipts: Iterable[ReceiptData]) -> float:
    return round(sum(float(r.total or 0) for r in receipts), 2)


def build_view(
    receipts: List[ReceiptData],
    *,
    month: Optional[str] = None,
    search: str = "",
    sort_key: str = "date",
    direction: str = "desc",
    today: Optional[date_cls] = None,
) -> ReceiptsView:
    months = available_months(receipts)
    selected = month if month in months else default_month(months, today)

    rows = filter_receipts(receipts, selected, search) if selected else []
    rows = sort_receipts(rows, sort_key, direction)

    return ReceiptsView(
        available_months=months,
        selected_month=selected,
        search=search or "",
        sort_key=sort_key,
        direction=direction,
        receipts=rows,
        monthly_total=monthly_total(rows),
        count=len(rows),
    )
