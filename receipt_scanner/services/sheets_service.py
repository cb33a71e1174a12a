# receipt_scanner/services/sheets_service.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from receipt_scanner.errors import GoogleApiError
from receipt_scanner.formatters import format_items
from receipt_scanner.logging_utils import get_logger
from receipt_scanner.schemas import ReceiptData
from receipt_scanner.services import storage_service
from receipt_scanner.services.google_api import GoogleApiClient

log = get_logger(__name__)

SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"
SPREADSHEET_TITLE = "Receipt Scanner - Records"
SHEET_NAME = "Receipts"

HEADERS: List[str] = [
    "Date",
    "Merchant",
    "Total",
    "Items",
    "Notes",
    "Image Link",
    "Created At",
]


def spreadsheet_url(spreadsheet_id: str) -> str:
    return f"https://docs.google.com/spreadsheets/d/{spreadsheet_id}/edit"


def build_row(data: ReceiptData, image_link: Optional[str] = None, created_at: Optional[str] = None) -> list:
    return [
        data.date,
        data.merchant_name,
        data.total,
        format_items(data.items),
        data.notes or "",
        image_link or data.image_url or "",
        created_at or datetime.now(timezone.utc).isoformat(),
    ]


class SheetsService(GoogleApiClient):
    """Appends saved receipts to the user's 'Receipt Scanner - Records' spreadsheet."""

    spreadsheet_id: Optional[str] = None

    def _cached_id(self) -> Optional[str]:
        if self.spreadsheet_id:
            return self.spreadsheet_id
        if self.user_key:
            return storage_service.get_state_value(self.user_key, storage_service.SPREADSHEET_ID, self.data_dir)
        return None

    def _remember(self, spreadsheet_id: Optional[str]) -> None:
        self.spreadsheet_id = spreadsheet_id
        if not self.user_key:
            return
        if spreadsheet_id:
            storage_service.update_state(
                self.user_key, self.data_dir, **{storage_service.SPREADSHEET_ID: spreadsheet_id}
            )
        else:
            storage_service.clear_state_key(self.user_key, storage_service.SPREADSHEET_ID, self.data_dir)

    # --------------------------------------------------------------------------
    # Spreadsheet lifecycle
    # --------------------------------------------------------------------------

    def ensure_spreadsheet(self) -> str:
        cached = self._cached_id()
        if cached:
            try:
                self._request("GET", f"{SHEETS_API_BASE}/{cached}", "open spreadsheet",
                              params={"fields": "spreadsheetId"})
            except GoogleApiError as e:
                if e.status_code == 401:
                    raise
                # deleted / no longer shared with the app
                log.warning("Stored spreadsheet %s not usable (%s); creating a new one", cached, e)
                self._remember(None)
            else:
                self.spreadsheet_id = cached
                return cached

        r = self._request(
            "POST", SHEETS_API_BASE, "create spreadsheet",
            json={
                "properties": {"title": SPREADSHEET_TITLE},
                "sheets": [{"properties": {"title": SHEET_NAME}}],
            },
        )
        data = self._json(r)
        new_id = self._id(data, "create spreadsheet", key="spreadsheetId")
        sheets = data.get("sheets") or [{}]
        sheet_id = ((sheets[0] or {}).get("properties") or {}).get("sheetId", 0)

        self._remember(new_id)
        log.info("Created spreadsheet %s (%s)", SPREADSHEET_TITLE, new_id)
        self._add_headers(new_id, sheet_id)
        return new_id

    def _add_headers(self, spreadsheet_id: str, sheet_id: int = 0) -> None:
        self._request(
            "PUT", f"{SHEETS_API_BASE}/{spreadsheet_id}/values/{SHEET_NAME}!A1:G1", "write headers",
            params={"valueInputOption": "RAW"},
            json={"values": [HEADERS]},
        )
        self._request(
            "POST", f"{SHEETS_API_BASE}/{spreadsheet_id}:batchUpdate", "format headers",
            json={
                "requests": [
                    {
                        "repeatCell": {
                            "range": {"sheetId": sheet_id, "startRowIndex": 0, "endRowIndex": 1},
                            "cell": {"userEnteredFormat": {"textFormat": {"bold": True}}},
                            "fields": "userEnteredFormat.textFormat.bold",
                        }
                    }
                ]
            },
        )

    # --------------------------------------------------------------------------
    # Public API
    # --------------------------------------------------------------------------

    def add_receipt(self, data: ReceiptData, image_link: Optional[str] = None) -> None:
        spreadsheet_id = self.ensure_spreadsheet()
        self._request(
            "POST", f"{SHEETS_API_BASE}/{spreadsheet_id}/values/{SHEET_NAME}!A:G:append", "append to spreadsheet",
            params={"valueInputOption": "USER_ENTERED"},
            json={"values": [build_row(data, image_link)]},
        )
        log.info("Logged to Sheets: %s %.2f", data.merchant_name, data.total)

    def get_spreadsheet_url(self) -> Optional[str]:
        sid = self._cached_id()
        return spreadsheet_url(sid) if sid else None

    def reset_spreadsheet(self) -> None:
        self._remember(None)
        log.info("Spreadsheet reference cleared")
