# receipt_scanner/services/receipt_hash.py
from __future__ import annotations

import hashlib
import json
from typing import Any, List, Union
from uuid import uuid4

from receipt_scanner.logging_utils import get_logger
from receipt_scanner.schemas import ReceiptData

log = get_logger(__name__)


def _num(value: Any) -> str:
    # 10, 10.0 and "10" must agree
    return repr(float(value if value is not None else 0))


def _field(receipt: Union[ReceiptData, dict], name: str, alias: str = "") -> Any:
    if isinstance(receipt, ReceiptData):
        return getattr(receipt, name)
    if name in receipt:
        return receipt.get(name)
    return receipt.get(alias) if alias else None


def _canonical(receipt: Union[ReceiptData, dict]) -> str:
    merchant = str(_field(receipt, "merchant_name", "merchantName") or "").strip()
    date = str(_field(receipt, "date") or "").strip()
    total = _num(_field(receipt, "total"))

    items: List[List[str]] = []
    for item in _field(receipt, "items") or []:
        if hasattr(item, "model_dump"):
            item = item.model_dump()
        name = str(item.get("name") or "").strip()
        items.append([name, _num(item.get("price"))])
    items.sort()

    return json.dumps([merchant, date, total, items], ensure_ascii=False, separators=(",", ":"))


def create_receipt_hash(receipt: Union[ReceiptData, dict]) -> str:
    """
    Deterministic fingerprint of merchant, date, total and the item multiset.

    Item order and surrounding whitespace do not matter; notes and links
    are not part of the identity.
    """
    try:
        canonical = _canonical(receipt)
    except (TypeError, ValueError) as e:
        # Unparseable numbers: unique value so the save still goes through.
        log.warning("Could not canonicalise receipt for hashing (%s); using a one-off hash", e)
        merchant = _field(receipt, "merchant_name", "merchantName")
        canonical = f"{merchant}-{_field(receipt, 'date')}-{_field(receipt, 'total')}-{uuid4().hex}"

    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
