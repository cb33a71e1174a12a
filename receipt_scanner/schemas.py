# receipt_scanner/schemas.py
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field


# -----------------------------------------------------------------------------
# Receipt record
# Field names are snake_case on our side; the vision model answers in
# camelCase, so both spellings are accepted on input.
# -----------------------------------------------------------------------------

class ReceiptItem(BaseModel):
    name: str = ""
    price: float = 0.0


class ReceiptData(BaseModel):
    id: Optional[int] = None
    merchant_name: str = Field(
        default="",
        validation_alias=AliasChoices("merchant_name", "merchantName"),
    )
    date: str = ""  # YYYY-MM-DD
    total: float = 0.0
    items: List[ReceiptItem] = Field(default_factory=list)
    notes: Optional[str] = None

    image_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("image_url", "imageUrl"),
    )
    drive_file_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("drive_file_id", "driveFileId"),
    )
    created_at: Optional[str] = None


ProcessingStatus = Literal[
    "pending",
    "analyzing",
    "awaiting_confirmation",
    "saving",
    "saved",
    "duplicate",
    "error",
    "not_configured",
    "skipped",
]

SaveStatus = Literal["saved", "duplicate", "not_configured", "error"]


# -----------------------------------------------------------------------------
# Save pipeline
# -----------------------------------------------------------------------------

class DriveUpload(BaseModel):
    file_id: str
    file_name: str
    web_view_link: str


class SaveResult(BaseModel):
    status: SaveStatus
    receipt: Optional[ReceiptData] = None
    error: Optional[str] = None

    drive: Optional[DriveUpload] = None
    sheets_logged: bool = False
    # optional archive steps that failed after (or before) a good save
    warnings: List[str] = Field(default_factory=list)

    @property
    def is_duplicate(self) -> bool:
        return self.status == "duplicate"

    @property
    def not_configured(self) -> bool:
        return self.status == "not_configured"


class ReceiptPatch(BaseModel):
    """
    Only send what you want to change. Everything is Optional on purpose.
    """
    merchant_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("merchant_name", "merchantName"),
    )
    date: Optional[str] = None
    total: Optional[float] = None
    items: Optional[List[ReceiptItem]] = None
    notes: Optional[str] = None


# -----------------------------------------------------------------------------
# Batch upload
# -----------------------------------------------------------------------------

class ProcessResult(BaseModel):
    filename: str
    status: ProcessingStatus
    data: Optional[ReceiptData] = None
    error: Optional[str] = None


class BatchUploadResponse(BaseModel):
    batch_id: str
    total: int
    processed: int
    has_saved: bool = False
    results: List[ProcessResult] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Viewer
# -----------------------------------------------------------------------------

SortKey = Literal["date", "merchant_name", "total"]
SortDirection = Literal["asc", "desc"]


class ReceiptsView(BaseModel):
    available_months: List[str] = Field(default_factory=list)
    selected_month: Optional[str] = None
    search: str = ""
    sort_key: SortKey = "date"
    direction: SortDirection = "desc"
    receipts: List[ReceiptData] = Field(default_factory=list)
    monthly_total: float = 0.0
    count: int = 0
