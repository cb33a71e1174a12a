from __future__ import annotations

import json

import pytest

from receipt_scanner.errors import GoogleApiError
from receipt_scanner.schemas import ReceiptData, ReceiptItem
from receipt_scanner.services import storage_service
from receipt_scanner.services.drive_service import DriveService, generate_file_name
from receipt_scanner.services.sheets_service import HEADERS, SheetsService, build_row

from conftest import FakeResponse

USER = "owner@example.com"


def _receipt() -> ReceiptData:
    return ReceiptData(
        merchant_name="Cafe",
        date="2025-01-01",
        total=10,
        items=[ReceiptItem(name="Tea", price=4), ReceiptItem(name="Cake", price=6)],
        notes="team",
    )


# ---------------------------------------------------------------------------
# Drive
# ---------------------------------------------------------------------------

def test_generate_file_name() -> None:
    assert generate_file_name("Jollibee #12 (SM)", "2025-01-01", "photo.png", 1700000000000) == \
        "2025-01-01_Jollibee__12__SM__1700000000000.png"
    assert generate_file_name("A", "2025-01-01", "blob", 1).endswith("_1.jpg")


def test_existing_folder_is_found_and_cached(session, tmp_path) -> None:
    session.on("GET", "/files/folder-9", FakeResponse(200, {"id": "folder-9", "trashed": False}))
    session.on("GET", "/drive/v3/files", FakeResponse(200, {"files": [{"id": "folder-9", "name": "x"}]}))
    drive = DriveService("tok", user_key=USER, data_dir=str(tmp_path), session=session)

    assert drive.ensure_folder() == "folder-9"
    assert drive.ensure_folder() == "folder-9"
    assert len(session.calls) == 1

    q = session.calls[0]["params"]["q"]
    assert "name='Receipt Scanner Uploads'" in q
    assert "mimeType='application/vnd.google-apps.folder'" in q
    assert "trashed=false" in q
    assert session.calls[0]["headers"]["Authorization"] == "Bearer tok"

    # a fresh service for the same user checks the stored id instead of searching
    again = DriveService("tok", user_key=USER, data_dir=str(tmp_path), session=session)
    assert again.ensure_folder() == "folder-9"
    assert len(session.calls) == 2
    assert session.calls[1]["url"].endswith("/drive/v3/files/folder-9")
    assert session.calls[1]["params"] == {"fields": "id,trashed"}


def test_deleted_folder_is_replaced(session, tmp_path) -> None:
    storage_service.update_state(USER, str(tmp_path), **{storage_service.FOLDER_ID: "deleted-folder"})
    session.on("GET", "/files/deleted-folder", FakeResponse(404, text="File not found: deleted-folder"))
    session.on("GET", "/drive/v3/files", FakeResponse(200, {"files": []}))
    session.on("POST", "/upload/drive/v3/files", FakeResponse(200, {"id": "file-1"}))
    session.on("POST", "/drive/v3/files", FakeResponse(200, {"id": "fresh-folder"}))
    drive = DriveService("tok", user_key=USER, data_dir=str(tmp_path), session=session)

    drive.upload_image(b"x", "image/jpeg", "a.jpg", "Cafe", "2025-01-01")

    upload = session.calls_to("POST", "/upload/drive/v3/files")[0]
    assert b'"parents": ["fresh-folder"]' in upload["data"]
    assert storage_service.get_state_value(USER, storage_service.FOLDER_ID, str(tmp_path)) == "fresh-folder"


def test_trashed_folder_is_not_reused(session, tmp_path) -> None:
    storage_service.update_state(USER, str(tmp_path), **{storage_service.FOLDER_ID: "old-folder"})
    session.on("GET", "/files/old-folder", FakeResponse(200, {"id": "old-folder", "trashed": True}))
    session.on("GET", "/drive/v3/files", FakeResponse(200, {"files": [{"id": "other-folder"}]}))
    drive = DriveService("tok", user_key=USER, data_dir=str(tmp_path), session=session)

    assert drive.ensure_folder() == "other-folder"


def test_folder_check_with_expired_token_raises(session, tmp_path) -> None:
    storage_service.update_state(USER, str(tmp_path), **{storage_service.FOLDER_ID: "folder-9"})
    session.on("GET", "/files/folder-9", FakeResponse(401, text="Invalid Credentials"))
    drive = DriveService("tok", user_key=USER, data_dir=str(tmp_path), session=session)

    with pytest.raises(GoogleApiError) as exc:
        drive.ensure_folder()
    assert exc.value.status_code == 401
    assert storage_service.get_state_value(USER, storage_service.FOLDER_ID, str(tmp_path)) == "folder-9"


def test_missing_folder_is_created(session, tmp_path) -> None:
    session.on("GET", "/drive/v3/files", FakeResponse(200, {"files": []}))
    session.on("POST", "/drive/v3/files", FakeResponse(200, {"id": "new-folder"}))
    drive = DriveService("tok", session=session)

    assert drive.ensure_folder() == "new-folder"
    create = session.calls_to("POST", "/drive/v3/files")[0]
    assert create["json"] == {"name": "Receipt Scanner Uploads", "mimeType": "application/vnd.google-apps.folder"}


def test_upload_image_multipart(session, tmp_path) -> None:
    session.on("GET", "/drive/v3/files", FakeResponse(200, {"files": [{"id": "folder-1"}]}))
    session.on("POST", "/upload/drive/v3/files", FakeResponse(200, {"id": "file-1", "name": "n.jpg"}))
    drive = DriveService("tok", session=session)

    up = drive.upload_image(b"\xff\xd8JPEGDATA", "image/jpeg", "IMG.jpg", "Cafe", "2025-01-01")

    assert up.file_id == "file-1"
    assert up.web_view_link == "https://drive.google.com/file/d/file-1/view"
    call = session.calls_to("POST", "/upload/drive/v3/files")[0]
    assert call["params"] == {"uploadType": "multipart", "fields": "id,name,webViewLink"}
    assert call["headers"]["Content-Type"].startswith("multipart/related; boundary=")
    assert b"JPEGDATA" in call["data"]
    assert b'"parents": ["folder-1"]' in call["data"]


def test_upload_failure_raises(session) -> None:
    session.on("GET", "/drive/v3/files", FakeResponse(200, {"files": [{"id": "folder-1"}]}))
    session.on("POST", "/upload/drive/v3/files", FakeResponse(403, text="insufficient scope"))
    with pytest.raises(GoogleApiError) as exc:
        DriveService("tok", session=session).upload_image(b"x", "image/jpeg", "a.jpg", "Cafe", "2025-01-01")
    assert exc.value.status_code == 403


def test_make_public(session) -> None:
    session.on("POST", "/permissions", FakeResponse(200, {"id": "perm"}))
    DriveService("tok", session=session).make_public("file-1")
    assert session.calls[0]["json"] == {"role": "reader", "type": "anyone"}
    assert "/files/file-1/permissions" in session.calls[0]["url"]


def test_missing_token_rejected() -> None:
    with pytest.raises(GoogleApiError):
        DriveService("")


# ---------------------------------------------------------------------------
# Sheets
# ---------------------------------------------------------------------------

def _new_sheet_routes(session) -> None:
    session.on("POST", "values/Receipts!A:G:append", FakeResponse(200, {"updates": {}}))
    session.on("POST", ":batchUpdate", FakeResponse(200, {}))
    session.on("PUT", "values/Receipts!A1:G1", FakeResponse(200, {}))
    session.on("POST", "sheets.googleapis.com/v4/spreadsheets", FakeResponse(
        200, {"spreadsheetId": "sheet-1", "sheets": [{"properties": {"sheetId": 0, "title": "Receipts"}}]}
    ))


def test_first_receipt_creates_spreadsheet_with_headers(session, tmp_path) -> None:
    _new_sheet_routes(session)
    sheets = SheetsService("tok", user_key=USER, data_dir=str(tmp_path), session=session)

    sheets.add_receipt(_receipt(), image_link="https://drive/x")

    methods = [(c["method"], c["url"].rsplit("/", 1)[-1]) for c in session.calls]
    assert methods == [
        ("POST", "spreadsheets"),
        ("PUT", "Receipts!A1:G1"),
        ("POST", "sheet-1:batchUpdate"),
        ("POST", "Receipts!A:G:append"),
    ]
    assert session.calls[1]["json"] == {"values": [HEADERS]}
    assert session.calls[1]["params"] == {"valueInputOption": "RAW"}
    bold = session.calls[2]["json"]["requests"][0]["repeatCell"]
    assert bold["cell"]["userEnteredFormat"]["textFormat"]["bold"] is True

    row = session.calls[3]["json"]["values"][0]
    assert row[:6] == ["2025-01-01", "Cafe", 10.0, "Tea ($4.00), Cake ($6.00)", "team", "https://drive/x"]
    assert session.calls[3]["params"] == {"valueInputOption": "USER_ENTERED"}

    assert storage_service.get_state_value(USER, storage_service.SPREADSHEET_ID, str(tmp_path)) == "sheet-1"
    assert sheets.get_spreadsheet_url() == "https://docs.google.com/spreadsheets/d/sheet-1/edit"


def test_cached_spreadsheet_is_reused(session, tmp_path) -> None:
    storage_service.update_state(USER, str(tmp_path), spreadsheet_id="sheet-old")
    session.on("GET", "spreadsheets/sheet-old", FakeResponse(200, {"spreadsheetId": "sheet-old"}))
    session.on("POST", "values/Receipts!A:G:append", FakeResponse(200, {}))

    SheetsService("tok", user_key=USER, data_dir=str(tmp_path), session=session).add_receipt(_receipt())
    assert [c["method"] for c in session.calls] == ["GET", "POST"]
    assert "sheet-old" in session.calls[1]["url"]


def test_deleted_spreadsheet_is_recreated(session, tmp_path) -> None:
    storage_service.update_state(USER, str(tmp_path), spreadsheet_id="gone")
    session.on("GET", "spreadsheets/gone", FakeResponse(404, text="not found"))
    _new_sheet_routes(session)

    sheets = SheetsService("tok", user_key=USER, data_dir=str(tmp_path), session=session)
    assert sheets.ensure_spreadsheet() == "sheet-1"
    assert storage_service.get_state_value(USER, storage_service.SPREADSHEET_ID, str(tmp_path)) == "sheet-1"


def test_expired_token_is_not_treated_as_missing_sheet(session, tmp_path) -> None:
    storage_service.update_state(USER, str(tmp_path), spreadsheet_id="sheet-old")
    session.on("GET", "spreadsheets/sheet-old", FakeResponse(401, text="expired"))
    with pytest.raises(GoogleApiError):
        SheetsService("tok", user_key=USER, data_dir=str(tmp_path), session=session).ensure_spreadsheet()
    assert storage_service.get_state_value(USER, storage_service.SPREADSHEET_ID, str(tmp_path)) == "sheet-old"


def test_reset_spreadsheet(tmp_path, session) -> None:
    storage_service.update_state(USER, str(tmp_path), spreadsheet_id="sheet-1")
    sheets = SheetsService("tok", user_key=USER, data_dir=str(tmp_path), session=session)
    sheets.reset_spreadsheet()
    assert sheets.get_spreadsheet_url() is None


def test_build_row_falls_back_to_stored_image_url() -> None:
    data = _receipt().model_copy(update={"image_url": "https://stored"})
    row = build_row(data, created_at="2025-01-01T00:00:00+00:00")
    assert row[5] == "https://stored"
    assert row[6] == "2025-01-01T00:00:00+00:00"
