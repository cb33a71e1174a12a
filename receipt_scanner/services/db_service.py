# receipt_scanner/services/db_service.py
from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

from receipt_scanner.config import Settings, get_settings
from receipt_scanner.errors import (
    DuplicateReceiptError,
    NotConfiguredError,
    ReceiptNotFoundError,
    StoreError,
)
from receipt_scanner.logging_utils import get_logger
from receipt_scanner.schemas import ReceiptData, ReceiptItem, ReceiptPatch, SaveResult
from receipt_scanner.services.receipt_hash import create_receipt_hash

log = get_logger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"

NOT_CONFIGURED_MSG = "Supabase is not configured. Set SUPABASE_URL and SUPABASE_KEY."
DUPLICATE_MSG = "This receipt has already been saved."


# ------------------------------------------------------------------------------
# Client
# ------------------------------------------------------------------------------

@lru_cache(maxsize=4)
def _cached_client(url: str, key: str) -> Client:
    log.info("Creating Supabase client for %s", url)
    return create_client(url, key)


def get_client(settings: Optional[Settings] = None) -> Optional[Client]:
    """Shared Supabase client, or None when credentials are missing."""
    settings = settings or get_settings()
    if not settings.supabase_configured:
        return None
    return _cached_client(settings.supabase_url, settings.supabase_key)


def _require(client: Optional[Client]) -> Client:
    if client is None:
        raise NotConfiguredError(NOT_CONFIGURED_MSG)
    return client


def _table_name(settings: Optional[Settings]) -> str:
    return (settings or get_settings()).receipts_table


def _is_unique_violation(e: APIError) -> bool:
    return str(getattr(e, "code", "") or "") == UNIQUE_VIOLATION


# ------------------------------------------------------------------------------
# Row mapping
# ------------------------------------------------------------------------------

def _to_row(data: ReceiptData) -> Dict[str, Any]:
    return {
        "merchant_name": data.merchant_name.strip(),
        "date": data.date.strip(),
        "total": float(data.total),
        "items": [i.model_dump() for i in data.items],
        "notes": data.notes,
        "image_url": data.image_url,
        "drive_file_id": data.drive_file_id,
        "unique_hash": create_receipt_hash(data),
    }


def _from_row(row: Dict[str, Any]) -> ReceiptData:
    items = row.get("items") or []
    return ReceiptData(
        id=row.get("id"),
        merchant_name=row.get("merchant_name") or "",
        date=str(row.get("date") or ""),
        total=float(row.get("total") or 0),
        items=[ReceiptItem(**i) for i in items if isinstance(i, dict)],
        notes=row.get("notes"),
        image_url=row.get("image_url"),
        drive_file_id=row.get("drive_file_id"),
        created_at=str(row["created_at"]) if row.get("created_at") else None,
    )


# ------------------------------------------------------------------------------
# Writes
# ------------------------------------------------------------------------------

def save_receipt(
    data: ReceiptData,
    *,
    client: Optional[Client],
    settings: Optional[Settings] = None,
) -> SaveResult:
    """
    Insert one receipt. A unique_hash collision is reported as
    status="duplicate" and leaves the table untouched.
    """
    if client is None:
        return SaveResult(status="not_configured", receipt=data, error=NOT_CONFIGURED_MSG)

    row = _to_row(data)
    try:
        resp = client.table(_table_name(settings)).insert(row).execute()
    except APIError as e:
        if _is_unique_violation(e):
            log.info("Duplicate receipt skipped: %s %s %.2f", row["merchant_name"], row["date"], row["total"])
            return SaveResult(status="duplicate", receipt=data, error=DUPLICATE_MSG)
        log.error("Supabase insert failed: %r", e)
        return SaveResult(status="error", receipt=data, error="Failed to save to database.")
    except httpx.HTTPError as e:
        log.error("Supabase insert failed: %r", e)
        return SaveResult(status="error", receipt=data, error="Failed to save to database.")

    saved = _from_row(resp.data[0]) if resp.data else data
    log.info("Saved receipt id=%s %s %s", saved.id, saved.merchant_name, saved.date)
    return SaveResult(status="saved", receipt=saved)


def update_receipt(
    receipt_id: int,
    patch: ReceiptPatch,
    *,
    client: Optional[Client],
    settings: Optional[Settings] = None,
) -> ReceiptData:
    client = _require(client)
    current = get_receipt(receipt_id, client=client, settings=settings)

    changes = patch.model_dump(exclude_unset=True)
    merged = current.model_copy(update={
        k: ([ReceiptItem(**i) for i in v] if k == "items" else v)
        for k, v in changes.items()
        if v is not None
    })

    row = _to_row(merged)
    try:
        resp = (
            client.table(_table_name(settings))
            .update(row)
            .eq("id", receipt_id)
            .execute()
        )
    except APIError as e:
        if _is_unique_violation(e):
            raise DuplicateReceiptError(
                "Another saved receipt already has these details.",
                unique_hash=row["unique_hash"],
            ) from e
        log.error("Supabase update failed for id=%s: %r", receipt_id, e)
        raise StoreError("Failed to update receipt.") from e
    except httpx.HTTPError as e:
        log.error("Supabase update failed for id=%s: %r", receipt_id, e)
        raise StoreError("Failed to update receipt.") from e

    if not resp.data:
        raise ReceiptNotFoundError(receipt_id)
    return _from_row(resp.data[0])


def delete_receipt(
    receipt_id: int,
    *,
    client: Optional[Client],
    settings: Optional[Settings] = None,
) -> None:
    client = _require(client)
    try:
        resp = client.table(_table_name(settings)).delete().eq("id", receipt_id).execute()
    except (APIError, httpx.HTTPError) as e:
        log.error("Supabase delete failed for id=%s: %r", receipt_id, e)
        raise StoreError("Failed to delete receipt.") from e

    if not resp.data:
        raise ReceiptNotFoundError(receipt_id)
    log.info("Deleted receipt id=%s", receipt_id)


# ------------------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------------------

def list_receipts(
    *,
    client: Optional[Client],
    settings: Optional[Settings] = None,
) -> List[ReceiptData]:
    """All receipts, newest date first (ties: newest created first)."""
    client = _require(client)
    try:
        resp = (
            client.table(_table_name(settings))
            .select("*")
            .order("date", desc=True)
            .order("created_at", desc=True)
            .execute()
        )
    except (APIError, httpx.HTTPError) as e:
        log.error("Supabase select failed: %r", e)
        raise StoreError("Failed to fetch receipts from the database.") from e

    return [_from_row(r) for r in (resp.data or [])]


def get_receipt(
    receipt_id: int,
    *,
    client: Optional[Client],
    settings: Optional[Settings] = None,
) -> ReceiptData:
    client = _require(client)
    try:
        resp = (
            client.table(_table_name(settings))
            .select("*")
            .eq("id", receipt_id)
            .limit(1)
            .execute()
        )
    except (APIError, httpx.HTTPError) as e:
        log.error("Supabase get failed for id=%s: %r", receipt_id, e)
        raise StoreError("Failed to fetch receipt.") from e

    if not resp.data:
        raise ReceiptNotFoundError(receipt_id)
    return _from_row(resp.data[0])


def find_by_hash(
    unique_hash: str,
    *,
    client: Optional[Client],
    settings: Optional[Settings] = None,
) -> Optional[ReceiptData]:
    """
    Pre-check for batch mode. The unique constraint on insert is still
    what actually prevents duplicates.
    """
    client = _require(client)
    try:
        resp = (
            client.table(_table_name(settings))
            .select("*")
            .eq("unique_hash", unique_hash)
            .limit(1)
            .execute()
        )
    except (APIError, httpx.HTTPError) as e:
        log.error("Supabase hash lookup failed: %r", e)
        raise StoreError("Failed to check for duplicate receipts.") from e

    return _from_row(resp.data[0]) if resp.data else None
