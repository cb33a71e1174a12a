from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Tuple

import cv2
import numpy as np
import pytest
from postgrest.exceptions import APIError

from receipt_scanner.config import Settings


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        openai_api_key="sk-test",
        vision_model="gpt-test",
        supabase_url="https://example.supabase.co",
        supabase_key="service-key",
        google_client_id="client-id",
        google_client_secret="client-secret",
        allowed_emails=["owner@example.com"],
        access_token_secret="test-secret",
        data_dir=str(tmp_path),
    )


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def make_image_bytes(width: int = 80, height: int = 50, ext: str = ".png") -> bytes:
    img = np.full((height, width, 3), 255, dtype=np.uint8)
    cv2.rectangle(img, (5, 5), (width - 5, height - 5), (0, 0, 0), 2)
    ok, buf = cv2.imencode(ext, img)
    assert ok
    return buf.tobytes()


# ---------------------------------------------------------------------------
# Supabase
# ---------------------------------------------------------------------------

class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload: Optional[Dict[str, Any]] = None
        self.filters: List[Tuple[str, Any]] = []
        self.orders: List[Tuple[str, bool]] = []
        self.limit_n: Optional[int] = None

    def select(self, _cols: str = "*"):
        self.op = "select"
        return self

    def insert(self, row: Dict[str, Any]):
        self.op, self.payload = "insert", dict(row)
        return self

    def update(self, row: Dict[str, Any]):
        self.op, self.payload = "update", dict(row)
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, col: str, value: Any):
        self.filters.append((col, value))
        return self

    def order(self, col: str, desc: bool = False):
        self.orders.append((col, desc))
        return self

    def limit(self, n: int):
        self.limit_n = n
        return self

    def _matches(self, row: Dict[str, Any]) -> bool:
        return all(row.get(c) == v for c, v in self.filters)

    def _check_unique(self, row: Dict[str, Any], ignore_id: Any = None) -> None:
        for other in self.db.rows:
            if other["id"] != ignore_id and other["unique_hash"] == row["unique_hash"]:
                raise APIError({
                    "message": 'duplicate key value violates unique constraint "receipts_unique_hash_key"',
                    "code": "23505",
                    "hint": None,
                    "details": None,
                })

    def execute(self):
        self.db.calls.append((self.op, self.table))
        if self.db.fail_with is not None:
            raise self.db.fail_with

        if self.op == "insert":
            self._check_unique(self.payload)
            self.db.next_id += 1
            row = dict(self.payload, id=self.db.next_id, created_at=f"2025-01-01T00:00:{self.db.next_id:02d}+00:00")
            self.db.rows.append(row)
            return SimpleNamespace(data=[dict(row)])

        if self.op == "update":
            hits = [r for r in self.db.rows if self._matches(r)]
            for r in hits:
                self._check_unique(self.payload, ignore_id=r["id"])
                r.update(self.payload)
            return SimpleNamespace(data=[dict(r) for r in hits])

        if self.op == "delete":
            hits = [r for r in self.db.rows if self._matches(r)]
            self.db.rows = [r for r in self.db.rows if not self._matches(r)]
            return SimpleNamespace(data=hits)

        rows = [dict(r) for r in self.db.rows if self._matches(r)]
        for col, desc in reversed(self.orders):
            rows.sort(key=lambda r: r.get(col) or "", reverse=desc)
        if self.limit_n is not None:
            rows = rows[: self.limit_n]
        return SimpleNamespace(data=rows)


class FakeSupabase:
    def __init__(self):
        self.rows: List[Dict[str, Any]] = []
        self.next_id = 0
        self.calls: List[Tuple[str, str]] = []
        self.fail_with: Optional[Exception] = None

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)


@pytest.fixture
def fake_db() -> FakeSupabase:
    return FakeSupabase()


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

class FakeCompletions:
    def __init__(self):
        self.replies: List[Any] = []
        self.calls: List[Dict[str, Any]] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if self.replies else "{}"
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(
            id="chatcmpl-test",
            choices=[SimpleNamespace(message=SimpleNamespace(content=reply))],
        )


class FakeVisionClient:
    def __init__(self, *replies: Any):
        self.completions = FakeCompletions()
        self.completions.replies.extend(replies)
        self.chat = SimpleNamespace(completions=self.completions)

    def queue_json(self, payload: Dict[str, Any]) -> "FakeVisionClient":
        self.completions.replies.append(json.dumps(payload))
        return self


@pytest.fixture
def vision() -> FakeVisionClient:
    return FakeVisionClient()


# ---------------------------------------------------------------------------
# Google REST (requests.Session stand-in)
# ---------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or (json.dumps(payload) if payload is not None else "")

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    """Routes (METHOD, url-substring) to a response or a callable."""

    def __init__(self):
        self.routes: List[Tuple[str, str, Any]] = []
        self.calls: List[Dict[str, Any]] = []

    def on(self, method: str, url_part: str, response: Any) -> "FakeSession":
        self.routes.append((method.upper(), url_part, response))
        return self

    def request(self, method: str, url: str, **kwargs):
        self.calls.append(dict(kwargs, method=method.upper(), url=url))
        for m, part, resp in self.routes:
            if m == method.upper() and part in url:
                return resp(url, kwargs) if callable(resp) else resp
        return FakeResponse(404, {"error": "no route"})

    def calls_to(self, method: str, url_part: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["method"] == method.upper() and url_part in c["url"]]


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()
