from __future__ import annotations

from datetime import date

import pytest

from receipt_scanner.schemas import ReceiptData
from receipt_scanner.services import viewer_service as vs


def _r(id_, merchant, d, total) -> ReceiptData:
    return ReceiptData(id=id_, merchant_name=merchant, date=d, total=total)


@pytest.fixture
def receipts():
    return [
        _r(1, "Jollibee", "2025-01-03", 250.0),
        _r(2, "7-Eleven", "2025-01-10", 85.5),
        _r(3, "jollibee Express", "2025-01-10", 120.0),
        _r(4, "Mercury Drug", "2024-12-28", 560.0),
        _r(5, "Jollibee", "2025-02-01", 99.0),
        _r(6, "SM Supermarket", "2025-01-15", 120.0),
    ]


def test_available_months_newest_first(receipts) -> None:
    assert vs.available_months(receipts) == ["2025-02", "2025-01", "2024-12"]


def test_group_by_month(receipts) -> None:
    grouped = vs.group_by_month(receipts)
    assert [r.id for r in grouped["2025-01"]] == [1, 2, 3, 6]


def test_default_month_prefers_current_month() -> None:
    months = ["2025-02", "2025-01"]
    assert vs.default_month(months, today=date(2025, 1, 20)) == "2025-01"
    assert vs.default_month(months, today=date(2025, 6, 1)) == "2025-02"
    assert vs.default_month([], today=date(2025, 6, 1)) is None


def test_filter_then_sort_by_merchant_is_case_insensitive(receipts) -> None:
    rows = vs.filter_receipts(receipts, "2025-01", "JOLLI")
    rows = vs.sort_receipts(rows, "merchant_name", "asc")
    assert [r.id for r in rows] == [1, 3]
    assert all(r.date.startswith("2025-01") for r in rows)


def test_search_keeps_surrounding_spaces() -> None:
    rows = [_r(1, "MyCafe", "2025-01-05", 10.0), _r(2, "The Cafe", "2025-01-06", 12.0)]
    assert [r.id for r in vs.filter_receipts(rows, "2025-01", " cafe")] == [2]
    assert [r.id for r in vs.filter_receipts(rows, "2025-01", "cafe")] == [1, 2]


def test_sort_by_total_is_stable_both_directions(receipts) -> None:
    jan = vs.filter_receipts(receipts, "2025-01")
    asc = vs.sort_receipts(jan, "total", "asc")
    desc = vs.sort_receipts(jan, "total", "desc")
    # 3 and 6 tie at 120.0 and keep input order either way
    assert [r.id for r in asc] == [2, 3, 6, 1]
    assert [r.id for r in desc] == [1, 3, 6, 2]


def test_sort_by_date_desc(receipts) -> None:
    rows = vs.sort_receipts(vs.filter_receipts(receipts, "2025-01"), "date", "desc")
    assert [r.id for r in rows] == [6, 2, 3, 1]


def test_unknown_sort_key_rejected(receipts) -> None:
    with pytest.raises(ValueError):
        vs.sort_receipts(receipts, "category", "asc")


def test_next_sort_toggles_and_defaults() -> None:
    assert vs.next_sort("date", "desc", "date") == ("date", "asc")
    assert vs.next_sort("date", "asc", "merchant_name") == ("merchant_name", "asc")
    assert vs.next_sort("merchant_name", "asc", "total") == ("total", "desc")


def test_build_view(receipts) -> None:
    view = vs.build_view(receipts, month="2025-01", search="", sort_key="total", direction="desc")
    assert view.selected_month == "2025-01"
    assert view.count == 4
    assert view.monthly_total == 575.5
    assert view.available_months[0] == "2025-02"


def test_build_view_falls_back_to_default_month(receipts) -> None:
    view = vs.build_view(receipts, month="2023-05", today=date(2025, 2, 10))
    assert view.selected_month == "2025-02"
    assert [r.id for r in view.receipts] == [5]


def test_build_view_empty() -> None:
    view = vs.build_view([])
    assert view.selected_month is None
    assert view.receipts == []
    assert view.monthly_total == 0


def test_month_labels_and_search() -> None:
    months = ["2025-02", "2025-01", "2024-12"]
    assert vs.format_month_year("2025-01") == "January 2025"
    assert list(vs.months_by_year(months).items()) == [("2025", ["2025-02", "2025-01"]), ("2024", ["2024-12"])]
    assert dict(vs.search_months(months, "dec")) == {"2024": ["2024-12"]}
    assert dict(vs.search_months(months, "2025")) == {"2025": ["2025-02", "2025-01"]}
    assert dict(vs.search_months(months, "")) == dict(vs.months_by_year(months))
