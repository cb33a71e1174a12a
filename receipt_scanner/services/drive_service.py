# receipt_scanner/services/drive_service.py
from __future__ import annotations

import json
import os
import re
import time
from typing import Optional
from uuid import uuid4

from receipt_scanner.errors import GoogleApiError
from receipt_scanner.logging_utils import get_logger
from receipt_scanner.schemas import DriveUpload
from receipt_scanner.services import storage_service
from receipt_scanner.services.google_api import GoogleApiClient

log = get_logger(__name__)

DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
UPLOAD_API_BASE = "https://www.googleapis.com/upload/drive/v3"
FOLDER_NAME = "Receipt Scanner Uploads"
FOLDER_MIME = "application/vnd.google-apps.folder"


def generate_file_name(merchant_name: str, date: str, original_name: str, timestamp_ms: Optional[int] = None) -> str:
    """YYYY-MM-DD_Merchant_Name_<ms>.<ext>"""
    ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    ext = os.path.splitext(original_name or "")[1].lstrip(".") or "jpg"
    merchant = re.sub(r"[^a-zA-Z0-9]", "_", merchant_name or "")
    return f"{date}_{merchant}_{ts}.{ext}"


def file_view_link(file_id: str) -> str:
    return f"https://drive.google.com/file/d/{file_id}/view"


class DriveService(GoogleApiClient):
    """Archives receipt images into the user's 'Receipt Scanner Uploads' folder."""

    folder_id: Optional[str] = None

    def _folder_usable(self, folder_id: str) -> bool:
        """Stored ids outlive the folder when the user deletes or trashes it."""
        try:
            r = self._request(
                "GET", f"{DRIVE_API_BASE}/files/{folder_id}", "open folder",
                params={"fields": "id,trashed"},
            )
        except GoogleApiError as e:
            if e.status_code == 401:
                raise
            log.warning("Stored Drive folder %s not usable (%s); looking it up again", folder_id, e)
            usable = False
        else:
            usable = not self._json(r).get("trashed")
            if not usable:
                log.warning("Stored Drive folder %s is in the trash; looking it up again", folder_id)

        if not usable:
            storage_service.clear_state_key(self.user_key, storage_service.FOLDER_ID, self.data_dir)
        return usable

    def ensure_folder(self) -> str:
        if self.folder_id:
            return self.folder_id

        if self.user_key:
            cached = storage_service.get_state_value(self.user_key, storage_service.FOLDER_ID, self.data_dir)
            if cached and self._folder_usable(cached):
                self.folder_id = cached
                return cached

        q = f"name='{FOLDER_NAME}' and mimeType='{FOLDER_MIME}' and trashed=false"
        r = self._request(
            "GET", f"{DRIVE_API_BASE}/files", "search for folder",
            params={"q": q, "fields": "files(id,name)"},
        )
        files = self._json(r).get("files") or []
        if files:
            self.folder_id = files[0]["id"]
            log.info("Found existing Drive folder %s (%s)", FOLDER_NAME, self.folder_id)
        else:
            r = self._request(
                "POST", f"{DRIVE_API_BASE}/files", "create folder",
                json={"name": FOLDER_NAME, "mimeType": FOLDER_MIME},
            )
            self.folder_id = self._id(self._json(r), "create folder")
            log.info("Created Drive folder %s (%s)", FOLDER_NAME, self.folder_id)

        if self.user_key:
            storage_service.update_state(self.user_key, self.data_dir, **{storage_service.FOLDER_ID: self.folder_id})
        return self.folder_id

    def upload_image(
        self,
        content: bytes,
        mime_type: str,
        original_name: str,
        merchant_name: str,
        date: str,
    ) -> DriveUpload:
        folder_id = self.ensure_folder()
        file_name = generate_file_name(merchant_name, date, original_name)
        metadata = {"name": file_name, "parents": [folder_id]}

        boundary = f"receipt-scanner-{uuid4().hex}"
        body = b"".join([
            f"--{boundary}\r\n".encode(),
            b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
            json.dumps(metadata).encode("utf-8"),
            f"\r\n--{boundary}\r\n".encode(),
            f"Content-Type: {mime_type or 'image/jpeg'}\r\n\r\n".encode(),
            content,
            f"\r\n--{boundary}--".encode(),
        ])

        r = self._request(
            "POST",
            f"{UPLOAD_API_BASE}/files",
            "upload file",
            params={"uploadType": "multipart", "fields": "id,name,webViewLink"},
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            data=body,
        )
        data = self._json(r)
        file_id = self._id(data, "upload file")
        log.info("Uploaded to Drive: %s (%s)", file_name, file_id)
        return DriveUpload(
            file_id=file_id,
            file_name=data.get("name") or file_name,
            web_view_link=data.get("webViewLink") or file_view_link(file_id),
        )

    def make_public(self, file_id: str) -> None:
        self._request(
            "POST", f"{DRIVE_API_BASE}/files/{file_id}/permissions", "share file",
            json={"role": "reader", "type": "anyone"},
        )
