# receipt_scanner/services/google_api.py
from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from receipt_scanner.errors import GoogleApiError
from receipt_scanner.logging_utils import get_logger

log = get_logger(__name__)

HTTP_TIMEOUT = 30


class GoogleApiClient:
    """Bearer-token REST calls against Google APIs on behalf of one user."""

    def __init__(
        self,
        access_token: str,
        *,
        user_key: Optional[str] = None,
        data_dir: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        if not access_token:
            raise GoogleApiError("Not signed in to Google", status_code=401)
        self.access_token = access_token
        self.user_key = user_key
        self.data_dir = data_dir
        self.session = session or requests.Session()

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        h = {"Authorization": f"Bearer {self.access_token}"}
        if extra:
            h.update(extra)
        return h

    def _request(
        self,
        method: str,
        url: str,
        what: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> requests.Response:
        try:
            r = self.session.request(method, url, headers=self._headers(headers), timeout=HTTP_TIMEOUT, **kwargs)
        except requests.RequestException as e:
            raise GoogleApiError(f"Failed to {what}: {e}") from e

        if not r.ok:
            detail = (r.text or "")[:300]
            log.error("Google API %s %s -> %s: %s", method, url, r.status_code, detail)
            raise GoogleApiError(f"Failed to {what}: {r.status_code} - {detail}", status_code=r.status_code)
        return r

    def _json(self, r: requests.Response) -> Dict[str, Any]:
        try:
            data = r.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _id(self, data: Dict[str, Any], what: str, key: str = "id") -> str:
        value = data.get(key)
        if not value:
            raise GoogleApiError(f"Failed to {what}: response has no {key}")
        return str(value)
