# receipt_scanner/errors.py
from __future__ import annotations

from typing import Optional


class ReceiptScannerError(Exception):
    """Base for every error raised by the receipt scanner services."""


class ImageValidationError(ReceiptScannerError):
    """Uploaded bytes are empty, too large, or not an image."""


class NotConfiguredError(ReceiptScannerError):
    """A hosted dependency (vision model, Supabase, Google) has no credentials."""


class ExtractionError(ReceiptScannerError):
    """The vision model call failed or returned something we cannot use."""


class StoreError(ReceiptScannerError):
    """The receipts table could not be read or written."""


class DuplicateReceiptError(StoreError):
    def __init__(self, message: str = "This receipt has already been saved.", unique_hash: Optional[str] = None):
        super().__init__(message)
        self.unique_hash = unique_hash


class ReceiptNotFoundError(StoreError):
    def __init__(self, receipt_id: int):
        super().__init__(f"Receipt {receipt_id} not found")
        self.receipt_id = receipt_id


class QueueBusyError(ReceiptScannerError):
    """Another queue item is still waiting for confirmation."""


class GoogleApiError(ReceiptScannerError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
