from __future__ import annotations

from receipt_scanner.schemas import ReceiptData, ReceiptItem
from receipt_scanner.services.receipt_hash import create_receipt_hash


def _cafe(**overrides) -> ReceiptData:
    base = dict(
        merchant_name="Cafe",
        date="2025-01-01",
        total=10,
        items=[ReceiptItem(name="Tea", price=4), ReceiptItem(name="Cake", price=6)],
    )
    base.update(overrides)
    return ReceiptData(**base)


def test_item_order_does_not_change_hash() -> None:
    a = _cafe()
    b = _cafe(items=[ReceiptItem(name="Cake", price=6), ReceiptItem(name="Tea", price=4)])
    assert create_receipt_hash(a) == create_receipt_hash(b)


def test_different_total_changes_hash() -> None:
    assert create_receipt_hash(_cafe()) != create_receipt_hash(_cafe(total=11))


def test_whitespace_is_trimmed() -> None:
    padded = _cafe(
        merchant_name="  Cafe ",
        date=" 2025-01-01",
        items=[ReceiptItem(name=" Tea", price=4), ReceiptItem(name="Cake  ", price=6)],
    )
    assert create_receipt_hash(padded) == create_receipt_hash(_cafe())


def test_any_field_change_changes_hash() -> None:
    h = create_receipt_hash(_cafe())
    assert create_receipt_hash(_cafe(merchant_name="Cafe 2")) != h
    assert create_receipt_hash(_cafe(date="2025-01-02")) != h
    assert create_receipt_hash(_cafe(items=[ReceiptItem(name="Tea", price=4)])) != h
    assert create_receipt_hash(
        _cafe(items=[ReceiptItem(name="Tea", price=5), ReceiptItem(name="Cake", price=6)])
    ) != h


def test_renaming_an_item_changes_hash() -> None:
    renamed = _cafe(items=[ReceiptItem(name="Coffee", price=4), ReceiptItem(name="Cake", price=6)])
    assert create_receipt_hash(renamed) != create_receipt_hash(_cafe())

    # same names and prices, swapped between items
    swapped = _cafe(items=[ReceiptItem(name="Tea", price=6), ReceiptItem(name="Cake", price=4)])
    assert create_receipt_hash(swapped) != create_receipt_hash(_cafe())


def test_notes_and_links_do_not_participate() -> None:
    h = create_receipt_hash(_cafe())
    assert create_receipt_hash(_cafe(notes="lunch", image_url="https://x", drive_file_id="abc")) == h


def test_dict_with_camel_case_matches_model() -> None:
    payload = {
        "merchantName": "Cafe",
        "date": "2025-01-01",
        "total": 10.0,
        "items": [{"name": "Cake", "price": 6.0}, {"name": "Tea", "price": 4}],
    }
    assert create_receipt_hash(payload) == create_receipt_hash(_cafe())


def test_unparseable_price_still_hashes_uniquely() -> None:
    payload = {"merchant_name": "Cafe", "date": "2025-01-01", "total": 10,
               "items": [{"name": "Tea", "price": "n/a"}]}
    a = create_receipt_hash(payload)
    b = create_receipt_hash(payload)
    assert len(a) == 64
    assert a != b
