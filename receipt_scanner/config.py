# receipt_scanner/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

load_dotenv(find_dotenv(usecwd=True))


BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))  # project/receipt_scanner -> project


def _env(*names: str, default: Optional[str] = None) -> Optional[str]:
    """First non-empty value among names (aliases), else default."""
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v.strip()
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _split_emails(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [e.strip().lower() for e in raw.split(",") if e.strip()]


@dataclass(frozen=True)
class Settings:
    # Vision model
    openai_api_key: Optional[str] = None
    vision_model: str = "gpt-4o-mini"
    date_order: str = "DMY"

    # Supabase
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    receipts_table: str = "receipts"

    # Google OAuth / allow-list
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    allowed_emails: List[str] = field(default_factory=list)

    # Tokens / sessions
    access_token_secret: str = "dev-secret-change-me"
    access_token_ttl_seconds: int = 86400
    session_secret: str = "dev-session-secret"

    # UI wiring
    ui_base_url: str = "http://localhost:8501"
    ui_origin: str = "http://localhost:8501"

    # Local state + uploads
    data_dir: str = os.path.join(BASE_DIR, "data")
    max_image_bytes: int = 15 * 1024 * 1024
    image_max_dim: int = 2000
    image_enable_rectify: bool = False

    currency: str = "PHP"

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def vision_configured(self) -> bool:
        return bool(self.openai_api_key)


def load_settings() -> Settings:
    ui_base_url = _env("UI_BASE_URL", default="http://localhost:8501")
    return Settings(
        openai_api_key=_env("OPENAI_API_KEY"),
        vision_model=_env("VISION_MODEL", default="gpt-4o-mini"),
        date_order=(_env("RECEIPT_DATE_ORDER", default="DMY") or "DMY").upper(),
        supabase_url=_env("SUPABASE_URL"),
        supabase_key=_env("SUPABASE_KEY", "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_ANON_KEY"),
        receipts_table=_env("RECEIPTS_TABLE", default="receipts"),
        google_client_id=_env("GOOGLE_CLIENT_ID"),
        google_client_secret=_env("GOOGLE_CLIENT_SECRET"),
        allowed_emails=_split_emails(_env("ALLOWED_EMAILS", "ALLOWED_EMAIL")),
        access_token_secret=_env("ACCESS_TOKEN_SECRET", "JWT_SECRET", default="dev-secret-change-me"),
        access_token_ttl_seconds=_env_int("ACCESS_TOKEN_TTL_SECONDS", 86400),
        session_secret=_env("SESSION_SECRET", default="dev-session-secret"),
        ui_base_url=ui_base_url,
        ui_origin=_env("UI_ORIGIN", default=ui_base_url),
        data_dir=_env("DATA_DIR", default=os.path.join(BASE_DIR, "data")),
        max_image_bytes=_env_int("MAX_IMAGE_BYTES", 15 * 1024 * 1024),
        image_max_dim=_env_int("IMAGE_MAX_DIM", 2000),
        image_enable_rectify=_env_bool("IMAGE_ENABLE_RECTIFY", False),
        currency=_env("CURRENCY", default="PHP"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
